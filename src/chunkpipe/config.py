"""Runtime configuration for the chunk pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from chunkpipe.models import CleanupMode

DEFAULT_LINES_PER_CHUNK = 1000
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_MAX_JOBS = 1
DEFAULT_PLACEHOLDER = "{}"
DEFAULT_RETRY_DELAY = "0"

_DELAY_KINDS = ("linear", "exponential")


@dataclass(slots=True, frozen=True)
class RetryDelay:
    """Delay strategy evaluated with the attempt number that just failed.

    ``constant`` always waits ``value`` seconds, ``linear`` waits
    ``value * attempt`` and ``exponential`` waits ``value * 2 ** (attempt - 1)``.
    ``cap`` bounds the result when set.
    """

    kind: str = "constant"
    value: float = 0.0
    cap: float | None = None

    def __call__(self, attempt: int) -> float:
        attempt = max(attempt, 1)
        if self.kind == "linear":
            delay = self.value * attempt
        elif self.kind == "exponential":
            delay = self.value * (2 ** (attempt - 1))
        else:
            delay = self.value
        if self.cap is not None:
            delay = min(delay, self.cap)
        return max(0.0, delay)


def parse_retry_delay(spec: str) -> RetryDelay:
    """Parse ``<seconds>``, ``linear:<step>[:<cap>]`` or ``exponential:<base>[:<cap>]``."""

    token = spec.strip().lower()
    if not token:
        raise ValueError("Retry delay must not be empty.")

    parts = token.split(":")
    if len(parts) == 1:
        return RetryDelay(kind="constant", value=_parse_seconds(parts[0], spec=spec))

    kind = parts[0]
    if kind not in _DELAY_KINDS:
        raise ValueError(
            f"Invalid retry delay {spec!r}. Expected <seconds>, "
            "linear:<step>[:<cap>] or exponential:<base>[:<cap>].",
        )
    if len(parts) > 3:  # noqa: PLR2004
        raise ValueError(f"Invalid retry delay {spec!r}: too many ':' separated parts.")
    value = _parse_seconds(parts[1], spec=spec)
    cap = _parse_seconds(parts[2], spec=spec) if len(parts) == 3 else None  # noqa: PLR2004
    return RetryDelay(kind=kind, value=value, cap=cap)


@dataclass(slots=True)
class RetrySettings:
    """Per-chunk retry policy."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    delay: str = DEFAULT_RETRY_DELAY
    fatal: bool = False


@dataclass(slots=True)
class CollectionSettings:
    """Collector configuration."""

    collector_specs: tuple[str, ...] = ()
    metadata_path: Path | None = None


@dataclass(slots=True)
class Settings:
    """Pipeline settings grouped by concern."""

    lines_per_chunk: int = DEFAULT_LINES_PER_CHUNK
    max_jobs: int = DEFAULT_MAX_JOBS
    placeholder: str = DEFAULT_PLACEHOLDER
    cleanup: CleanupMode = CleanupMode.SUCCESSFUL
    workdir_root: Path | None = None
    graceful_shutdown_seconds: float = 5.0
    verbose: bool = False
    log_path: Path | None = None
    retry: RetrySettings = field(default_factory=RetrySettings)
    collection: CollectionSettings = field(default_factory=CollectionSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``CHUNKPIPE_*`` environment variables."""

        metadata_path = os.getenv("CHUNKPIPE_METADATA_PATH", "").strip()
        workdir_root = os.getenv("CHUNKPIPE_WORKDIR_ROOT", "").strip()
        return cls(
            lines_per_chunk=_env_int("CHUNKPIPE_LINES_PER_CHUNK", DEFAULT_LINES_PER_CHUNK),
            max_jobs=_env_int("CHUNKPIPE_MAX_JOBS", DEFAULT_MAX_JOBS),
            placeholder=os.getenv("CHUNKPIPE_PLACEHOLDER", DEFAULT_PLACEHOLDER),
            cleanup=_env_cleanup("CHUNKPIPE_CLEANUP"),
            workdir_root=Path(workdir_root) if workdir_root else None,
            graceful_shutdown_seconds=float(
                os.getenv("CHUNKPIPE_GRACEFUL_SHUTDOWN_SECONDS", "5.0"),
            ),
            retry=RetrySettings(
                max_attempts=_env_int("CHUNKPIPE_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
                delay=os.getenv("CHUNKPIPE_RETRY_DELAY", DEFAULT_RETRY_DELAY),
                fatal=_env_bool("CHUNKPIPE_RETRY_FATAL", default=False),
            ),
            collection=CollectionSettings(
                metadata_path=Path(metadata_path) if metadata_path else None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the pipeline cannot run with."""

        if self.lines_per_chunk <= 0:
            raise ValueError("CHUNKPIPE_LINES_PER_CHUNK must be a positive integer.")
        if self.max_jobs <= 0:
            raise ValueError("CHUNKPIPE_MAX_JOBS must be a positive integer.")
        if self.retry.max_attempts <= 0:
            raise ValueError("CHUNKPIPE_MAX_ATTEMPTS must be a positive integer.")
        if not self.placeholder:
            raise ValueError("CHUNKPIPE_PLACEHOLDER must not be empty.")
        if self.graceful_shutdown_seconds < 0:
            raise ValueError("CHUNKPIPE_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        parse_retry_delay(self.retry.delay)

    def retry_delay(self) -> RetryDelay:
        return parse_retry_delay(self.retry.delay)


def _parse_seconds(raw: str, *, spec: str) -> float:
    try:
        value = float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid retry delay {spec!r}: {raw!r} is not a number.") from error
    if value < 0:
        raise ValueError(f"Invalid retry delay {spec!r}: seconds must be >= 0.")
    return value


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_cleanup(name: str) -> CleanupMode:
    value = os.getenv(name)
    if value is None or not value.strip():
        return CleanupMode.SUCCESSFUL
    try:
        return CleanupMode(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(mode.value for mode in CleanupMode)
        raise ValueError(
            f"Invalid value for {name}: {value!r}. Expected one of: {allowed}",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
