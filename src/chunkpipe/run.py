"""ChunkRun: wires splitter, worker pool, collector manager and final cleanup."""

from __future__ import annotations

import logging
import queue
import shutil
import tempfile
import threading
from collections.abc import Iterable, Sequence
from contextlib import nullcontext
from pathlib import Path
from typing import BinaryIO

from chunkpipe.collectors import Collector, build_collectors
from chunkpipe.config import Settings
from chunkpipe.execution import CommandRunner
from chunkpipe.ledger import CompletionLedger
from chunkpipe.manager import CollectionResult, CollectorManager
from chunkpipe.metadata import append_records
from chunkpipe.models import ChunkState, CleanupMode, PoolSummary, RunResult
from chunkpipe.pool import END_OF_CHUNKS, WorkerPool
from chunkpipe.shutdown import ShutdownState
from chunkpipe.splitter import read_chunk_count, split_lines
from chunkpipe.worker import ChunkWorker

logger = logging.getLogger(__name__)

EXIT_FAILURE = 1


class ChunkRun:
    """One pipeline invocation over a temporary working directory.

    Control flow: splitter thread -> chunk queue -> worker pool -> ledger ->
    collector manager -> collectors. The run always waits for the collector
    manager before aggregating exit status and applying the cleanup policy.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        command: Sequence[str],
        stdout: BinaryIO,
        stderr: BinaryIO,
        runner: CommandRunner | None = None,
        shutdown: ShutdownState | None = None,
    ) -> None:
        settings.validate()
        if not command:
            raise ValueError("A command to run per chunk is required.")
        self.settings = settings
        self.command = tuple(command)
        self.stdout = stdout
        self.stderr = stderr
        self.runner = runner or CommandRunner()
        self.shutdown = shutdown or ShutdownState()
        self.workdir: Path | None = None

    def execute(
        self,
        sources: Iterable[BinaryIO],
        *,
        install_signal_handlers: bool = True,
    ) -> RunResult:
        """Split ``sources``, process every chunk and collect outputs in order."""

        root = self.settings.workdir_root
        if root is not None:
            root.mkdir(parents=True, exist_ok=True)
        self.workdir = Path(tempfile.mkdtemp(prefix="chunkpipe-", dir=root))
        logger.info("Working directory: %s", self.workdir)

        ledger = CompletionLedger()
        self.shutdown.add_callback(ledger.stop)
        collectors = build_collectors(
            self.settings.collection.collector_specs,
            metadata_path=self.settings.collection.metadata_path,
            cleanup=self.settings.cleanup,
            stdout=self.stdout,
            stderr=self.stderr,
        )
        worker = ChunkWorker(
            ledger=ledger,
            command=self.command,
            runner=self.runner,
            placeholder=self.settings.placeholder,
            max_attempts=self.settings.retry.max_attempts,
            retry_delay=self.settings.retry_delay(),
            retry_fatal=self.settings.retry.fatal,
            cleanup=self.settings.cleanup,
            shutdown=self.shutdown,
            graceful_shutdown_seconds=self.settings.graceful_shutdown_seconds,
        )
        pool = WorkerPool(
            worker=worker,
            ledger=ledger,
            max_jobs=self.settings.max_jobs,
            shutdown=self.shutdown,
        )
        manager = CollectorManager(ledger=ledger, collectors=collectors, shutdown=self.shutdown)

        chunks: queue.Queue[Path | None] = queue.Queue()
        splitter_errors: list[BaseException] = []
        splitter = threading.Thread(
            target=self._split,
            args=(sources, chunks, ledger, pool, splitter_errors),
            name="chunkpipe-splitter",
            daemon=True,
        )

        signal_scope = self.shutdown.signal_handlers() if install_signal_handlers else nullcontext()
        with signal_scope:
            manager.start()
            splitter.start()
            try:
                summary = pool.run(chunks)
            finally:
                # A splitter blocked on input must not hang an interrupted run.
                splitter.join(
                    timeout=self.settings.graceful_shutdown_seconds
                    if self.shutdown.requested
                    else None,
                )
                undispatched = _drain_undispatched(chunks, ledger)
                ledger.close()
                collection = manager.join()

        if splitter_errors:
            raise splitter_errors[0]
        return self._finalize(
            summary=summary,
            collection=collection,
            collectors=collectors,
            ledger=ledger,
            undispatched=undispatched,
        )

    def _split(
        self,
        sources: Iterable[BinaryIO],
        chunks: queue.Queue[Path | None],
        ledger: CompletionLedger,
        pool: WorkerPool,
        errors: list[BaseException],
    ) -> None:
        if self.workdir is None:
            raise RuntimeError("Working directory is not initialized.")
        count = 0
        try:
            for path in split_lines(
                sources,
                chunk_dir=self.workdir,
                lines_per_chunk=self.settings.lines_per_chunk,
                should_stop=lambda: pool.aborted or self.shutdown.requested,
            ):
                count += 1
                chunks.put(path)
            total = read_chunk_count(self.workdir)
            if total is not None:
                ledger.set_total(total)
        except Exception as error:  # noqa: BLE001
            logger.exception("Splitter failed after %d chunk(s)", count)
            errors.append(error)
            pool.abort()
        finally:
            chunks.put(END_OF_CHUNKS)

    def _finalize(
        self,
        *,
        summary: PoolSummary,
        collection: CollectionResult,
        collectors: list[Collector],
        ledger: CompletionLedger,
        undispatched: int,
    ) -> RunResult:
        metadata_path = self.settings.collection.metadata_path
        if metadata_path is not None and collection.records:
            append_records(metadata_path, collection.records)

        interrupted_by = self.shutdown.signal_name if self.shutdown.requested else None
        if interrupted_by is not None:
            exit_code = self.shutdown.exit_code
        elif summary.ok and collection.ok and undispatched == 0:
            exit_code = 0
        else:
            exit_code = EXIT_FAILURE

        if summary.aborted:
            logger.warning(
                "Run aborted after a fatal chunk failure: %d chunk(s) never dispatched",
                undispatched,
            )
        failed_chunks = [
            str(chunk.sequence)
            for chunk in ledger.snapshot()
            if chunk.state is ChunkState.FAILED_EXHAUSTED
        ]
        if failed_chunks:
            logger.warning("Chunks failed after all attempts: %s", ", ".join(failed_chunks))
        for name in collection.failed_collectors:
            logger.warning("Collector failed: %s", name)

        chunk_count = read_chunk_count(self.workdir) if self.workdir is not None else None
        workdir_kept = self._cleanup_workdir(success=exit_code == 0)
        logger.info(
            "Run finished: exit=%d chunks=%d succeeded=%d failed=%d collectors=%d",
            exit_code,
            summary.dispatched + undispatched,
            summary.succeeded,
            summary.failed,
            len(collectors),
        )
        return RunResult(
            exit_code=exit_code,
            chunk_count=chunk_count,
            pool=summary,
            emitted=collection.emitted,
            collectors_failed=collection.failed_collectors,
            undispatched=undispatched,
            interrupted_by=interrupted_by,
            workdir=self.workdir,
            workdir_kept=workdir_kept,
        )

    def _cleanup_workdir(self, *, success: bool) -> bool:
        """Apply the cleanup policy to the working directory; True when kept."""

        if self.workdir is None:
            return False
        mode = self.settings.cleanup
        if mode is CleanupMode.ALL or (mode is CleanupMode.SUCCESSFUL and success):
            shutil.rmtree(self.workdir, ignore_errors=True)
            return False
        logger.warning("Keeping working directory for inspection: %s", self.workdir)
        return True


def _drain_undispatched(chunks: queue.Queue[Path | None], ledger: CompletionLedger) -> int:
    undispatched = 0
    while True:
        try:
            path = chunks.get_nowait()
        except queue.Empty:
            return undispatched
        if path is END_OF_CHUNKS:
            continue
        ledger.mark_aborted(path)
        undispatched += 1

