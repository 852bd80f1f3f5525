"""Domain models for chunk scheduling and ordered collection."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

OUT_SUFFIX = ".out"
ERR_SUFFIX = ".err"
META_SUFFIX = ".meta"
DONE_SUFFIX = ".done"
COUNT_FILE_NAME = "count"

# Returned by a worker instead of the chunk exit code when dispatch must stop.
# Negative so it never collides with a process exit status.
ABORT_EXIT_CODE = -1


class ChunkState(str, Enum):
    """Per-chunk lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED_EXHAUSTED = "failed_exhausted"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset(
    {ChunkState.SUCCEEDED, ChunkState.FAILED_EXHAUSTED, ChunkState.ABORTED},
)


class CleanupMode(str, Enum):
    """Which temporary artifacts are removed once consumed."""

    NONE = "none"
    SUCCESSFUL = "successful"
    ALL = "all"

    def removes_artifacts(self, exit_code: int | None) -> bool:
        """Whether artifacts of a chunk with this terminal code may be deleted."""

        if self is CleanupMode.ALL:
            return True
        if self is CleanupMode.NONE:
            return False
        return exit_code == 0


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy and reporting."""

    TRANSIENT = "transient"
    EXHAUSTED = "exhausted"
    FATAL = "fatal"
    INTERRUPTED = "interrupted"


@dataclass(slots=True)
class Chunk:
    """One unit of work: a numbered input file plus its sibling artifacts."""

    sequence: int
    input_path: Path
    state: ChunkState = ChunkState.PENDING
    attempts: int = 0
    exit_code: int | None = None

    @classmethod
    def from_path(cls, path: Path) -> Chunk:
        try:
            sequence = int(path.name)
        except ValueError as error:
            raise ValueError(f"Chunk file name must be a sequence number: {path}") from error
        if sequence < 1:
            raise ValueError(f"Chunk sequence numbers start at 1: {path}")
        return cls(sequence=sequence, input_path=path)

    def artifact_path(self, suffix: str) -> Path:
        return artifact_path(self.input_path, suffix)

    @property
    def out_path(self) -> Path:
        return self.artifact_path(OUT_SUFFIX)

    @property
    def err_path(self) -> Path:
        return self.artifact_path(ERR_SUFFIX)

    @property
    def meta_path(self) -> Path:
        return self.artifact_path(META_SUFFIX)

    @property
    def done_path(self) -> Path:
        return self.artifact_path(DONE_SUFFIX)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass(slots=True, frozen=True)
class CompletedChunk:
    """Collector stream item: a finished chunk identifier in sequence order."""

    sequence: int
    input_path: Path

    def artifact_path(self, suffix: str) -> Path:
        return artifact_path(self.input_path, suffix)

    @property
    def done_path(self) -> Path:
        return self.artifact_path(DONE_SUFFIX)


@dataclass(slots=True)
class PoolSummary:
    """Aggregate worker pool counters for reporting."""

    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    interrupted: int = 0
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.interrupted == 0 and not self.aborted


@dataclass(slots=True)
class RunResult:
    """Outcome of one complete pipeline invocation."""

    exit_code: int
    chunk_count: int | None
    pool: PoolSummary
    emitted: list[int]
    collectors_failed: list[str]
    undispatched: int = 0
    interrupted_by: str | None = None
    workdir: Path | None = None
    workdir_kept: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def artifact_path(input_path: Path, suffix: str) -> Path:
    """Sibling artifact path: chunk base name plus suffix."""

    return input_path.with_name(input_path.name + suffix)
