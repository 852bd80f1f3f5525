"""Chunk worker: execute, retry, record the terminal outcome, clean up."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from chunkpipe.config import RetryDelay
from chunkpipe.execution import (
    AttemptFailureClassification,
    CommandRunError,
    CommandRunner,
    CommandRunRequest,
    classify_attempt_failure,
    render_argv,
)
from chunkpipe.ledger import CompletionLedger
from chunkpipe.metadata import ACTION_COMMAND, MetadataRecord, write_record
from chunkpipe.models import (
    ABORT_EXIT_CODE,
    Chunk,
    ChunkState,
    CleanupMode,
    FailureClass,
)
from chunkpipe.shutdown import ShutdownState
from chunkpipe.splitter import read_chunk_count

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AttemptOutcome:
    """Result of one attempt after start errors are folded into exit codes."""

    exit_code: int
    interrupted: bool
    record: MetadataRecord
    start_failed: bool = False


class ChunkWorker:
    """Drives one chunk at a time from raw input to a terminal ledger record.

    A worker instance is stateless between chunks and may be shared by the
    pool's threads.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        ledger: CompletionLedger,
        command: Sequence[str],
        runner: CommandRunner | None = None,
        placeholder: str = "{}",
        max_attempts: int = 5,
        retry_delay: Callable[[int], float] | None = None,
        retry_fatal: bool = False,
        cleanup: CleanupMode = CleanupMode.SUCCESSFUL,
        shutdown: ShutdownState | None = None,
        graceful_shutdown_seconds: float = 5.0,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be a positive integer.")
        self.ledger = ledger
        self.command = tuple(command)
        self.runner = runner or CommandRunner()
        self.placeholder = placeholder
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay or RetryDelay()
        self.retry_fatal = retry_fatal
        self.cleanup = cleanup
        self.shutdown = shutdown or ShutdownState()
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def process(self, chunk: Chunk) -> int:
        """Run ``chunk`` to its terminal state and return its exit code.

        Returns ``ABORT_EXIT_CODE`` instead when retries are exhausted under
        the fatal policy so the pool stops dispatching.
        """

        argv = render_argv(self.command, placeholder=self.placeholder, value=str(chunk.input_path))
        exit_code = 0
        classification: AttemptFailureClassification | None = None
        interrupted = False

        while chunk.attempts < self.max_attempts:
            if self.shutdown.requested:
                interrupted = True
                exit_code = self.shutdown.exit_code
                break

            chunk.attempts += 1
            logger.info(
                "chunk %d/%s attempt %d/%d",
                chunk.sequence,
                self._total_label(chunk),
                chunk.attempts,
                self.max_attempts,
            )
            outcome = self._run_attempt(chunk, argv)
            exit_code = outcome.exit_code
            if exit_code == 0:
                classification = None
                write_record(chunk.meta_path, outcome.record)
                break

            interrupted = outcome.interrupted or self.shutdown.requested
            if interrupted:
                exit_code = self.shutdown.exit_code
            classification = classify_attempt_failure(
                exit_code=exit_code,
                attempt=chunk.attempts,
                max_attempts=self.max_attempts,
                interrupted=interrupted,
                start_failed=outcome.start_failed,
                retry_fatal=self.retry_fatal,
            )
            outcome.record.tags.update(classification.to_tags())
            write_record(chunk.meta_path, outcome.record)
            logger.info(
                "chunk %d attempt %d failed: exit=%d class=%s",
                chunk.sequence,
                chunk.attempts,
                exit_code,
                classification.failure_class.value,
            )
            if not classification.retry:
                break

            delay = self.retry_delay(chunk.attempts)
            if delay > 0:
                logger.debug("chunk %d retrying in %.3fs", chunk.sequence, delay)
                self.shutdown.wait(delay)

        if interrupted:
            state = ChunkState.ABORTED
        elif exit_code == 0:
            state = ChunkState.SUCCEEDED
        else:
            state = ChunkState.FAILED_EXHAUSTED

        self._cleanup_input(chunk, exit_code)
        self.ledger.record_done(chunk.sequence, exit_code=exit_code, state=state)
        logger.info(
            "chunk %d finished: state=%s exit=%d attempts=%d",
            chunk.sequence,
            state.value,
            exit_code,
            chunk.attempts,
        )

        if classification is not None and classification.failure_class is FailureClass.FATAL:
            logger.warning("chunk %d failed permanently; aborting dispatch", chunk.sequence)
            return ABORT_EXIT_CODE
        return exit_code

    def _run_attempt(self, chunk: Chunk, argv: list[str]) -> AttemptOutcome:
        tags = {
            "sequence": str(chunk.sequence),
            "attempt": str(chunk.attempts),
            "input": str(chunk.input_path),
        }
        try:
            result = self.runner.run(
                CommandRunRequest(
                    argv=argv,
                    stdin_path=chunk.input_path,
                    stdout_path=chunk.out_path,
                    stderr_path=chunk.err_path,
                    shutdown_requested=lambda: self.shutdown.requested,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                ),
            )
        except CommandRunError as error:
            logger.error("chunk %d: %s", chunk.sequence, error)
            tags["error"] = str(error)
            return AttemptOutcome(
                exit_code=error.exit_code,
                interrupted=False,
                record=MetadataRecord.from_run(
                    action=ACTION_COMMAND,
                    exit_status=error.exit_code,
                    wall_seconds=None,
                    usage=None,
                    tags=tags,
                ),
                start_failed=True,
            )

        return AttemptOutcome(
            exit_code=result.exit_code,
            interrupted=result.interrupted,
            record=MetadataRecord.from_command_result(
                result,
                exit_status=result.exit_code,
                tags=tags,
            ),
        )

    def _cleanup_input(self, chunk: Chunk, exit_code: int) -> None:
        if not self.cleanup.removes_artifacts(exit_code):
            return
        try:
            chunk.input_path.unlink(missing_ok=True)
        except OSError as error:
            logger.warning("Could not remove chunk input %s: %s", chunk.input_path, error)

    def _total_label(self, chunk: Chunk) -> str:
        total = read_chunk_count(chunk.input_path.parent)
        return "?" if total is None else str(total)
