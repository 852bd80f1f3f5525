"""Bounded worker pool pulling chunk files in FIFO order."""

from __future__ import annotations

import logging
import queue
import threading
from pathlib import Path
from typing import Protocol

from chunkpipe.ledger import CompletionLedger
from chunkpipe.models import ABORT_EXIT_CODE, Chunk, PoolSummary
from chunkpipe.shutdown import ShutdownState

logger = logging.getLogger(__name__)

# Put on the chunk queue once the splitter is finished.
END_OF_CHUNKS = None


class ChunkProcessor(Protocol):
    """Protocol implemented by chunk workers."""

    def process(self, chunk: Chunk) -> int:
        """Run one chunk to its terminal state and return its exit code."""


class WorkerPool:
    """Runs at most ``max_jobs`` chunks concurrently.

    Each thread pulls the next chunk path from the shared queue, so dispatch
    follows splitter order and every chunk is handed to exactly one worker.
    A worker returning ``ABORT_EXIT_CODE`` stops further dispatch; chunks
    already running are left to finish.
    """

    def __init__(
        self,
        *,
        worker: ChunkProcessor,
        ledger: CompletionLedger,
        max_jobs: int,
        shutdown: ShutdownState | None = None,
    ) -> None:
        if max_jobs <= 0:
            raise ValueError("max_jobs must be a positive integer.")
        self.worker = worker
        self.ledger = ledger
        self.max_jobs = max_jobs
        self.shutdown = shutdown or ShutdownState()
        self.dispatch_poll_seconds = 0.1
        self._abort = threading.Event()
        self._lock = threading.Lock()
        self._summary = PoolSummary()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self) -> None:
        """Stop dispatching new chunks; running chunks finish normally."""

        self._abort.set()

    def run(self, chunks: queue.Queue[Path | None]) -> PoolSummary:
        """Consume ``chunks`` until the end marker, abort, or shutdown."""

        threads = [
            threading.Thread(
                target=self._worker_loop,
                args=(chunks,),
                name=f"chunkpipe-worker-{index}",
                daemon=True,
            )
            for index in range(1, self.max_jobs + 1)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self._summary.aborted = self._abort.is_set()
        logger.info(
            "Pool finished: dispatched=%d succeeded=%d failed=%d interrupted=%d aborted=%s",
            self._summary.dispatched,
            self._summary.succeeded,
            self._summary.failed,
            self._summary.interrupted,
            self._summary.aborted,
        )
        return self._summary

    def _worker_loop(self, chunks: queue.Queue[Path | None]) -> None:
        while not self._abort.is_set() and not self.shutdown.requested:
            try:
                path = chunks.get(timeout=self.dispatch_poll_seconds)
            except queue.Empty:
                continue
            if path is END_OF_CHUNKS:
                # Leave the marker for the sibling threads.
                chunks.put(END_OF_CHUNKS)
                return
            if self._abort.is_set() or self.shutdown.requested:
                chunks.put(path)
                return

            chunk = self.ledger.register(path)
            self.ledger.claim(chunk.sequence)
            with self._lock:
                self._summary.dispatched += 1
            logger.debug("Dispatched chunk %d", chunk.sequence)

            try:
                exit_code = self.worker.process(chunk)
            except Exception:
                # No terminal record exists for this chunk; stop dispatch.
                logger.exception("Worker crashed on chunk %d", chunk.sequence)
                self._abort.set()
                with self._lock:
                    self._summary.failed += 1
                raise

            with self._lock:
                if exit_code == 0:
                    self._summary.succeeded += 1
                elif self.shutdown.requested and exit_code == self.shutdown.exit_code:
                    self._summary.interrupted += 1
                else:
                    self._summary.failed += 1
            if exit_code == ABORT_EXIT_CODE:
                self._abort.set()
