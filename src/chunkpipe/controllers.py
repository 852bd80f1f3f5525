"""Controllers for chunkpipe CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from click import get_binary_stream

from chunkpipe.collectors import (
    DEFAULT_COLLECTOR_SPECS,
    TARGET_STDERR,
    CollectorSpec,
    parse_collector_spec,
)
from chunkpipe.config import Settings
from chunkpipe.logging_config import logging_scope
from chunkpipe.metadata import parse_records
from chunkpipe.metrics import build_run_metrics, render_stats_lines
from chunkpipe.models import CleanupMode, RunResult
from chunkpipe.run import ChunkRun
from chunkpipe.splitter import split_lines

logger = logging.getLogger(__name__)

STDIN_MARKER = Path("-")


@dataclass(slots=True)
class ChunkRunCommand:
    """CLI input for one pipeline run; ``None`` keeps the environment value."""

    command: tuple[str, ...]
    inputs: tuple[Path, ...] = ()
    cleanup: str | None = None
    collectors: tuple[str, ...] = ()
    lines_per_chunk: int | None = None
    max_attempts: int | None = None
    max_jobs: int | None = None
    metadata_path: Path | None = None
    retry_delay: str | None = None
    retry_fatal: bool | None = None
    verbose: bool = False
    log_path: Path | None = None
    placeholder: str | None = None
    workdir_root: Path | None = None


@dataclass(slots=True)
class SplitCommand:
    """CLI input for the standalone splitter."""

    lines_per_chunk: int
    output_dir: Path
    inputs: tuple[Path, ...] = ()


@dataclass(slots=True)
class StatsCommand:
    """CLI input for metadata statistics."""

    metadata_path: Path


class ChunkpipeCliController:
    """Application service behind the chunkpipe CLI.

    Binary streams are resolved per call so the controller also works under
    ``click.testing.CliRunner``.
    """

    def __init__(
        self,
        *,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ) -> None:
        self._stdin = stdin
        self._stdout = stdout
        self._stderr = stderr

    def run(self, command: ChunkRunCommand) -> RunResult:
        settings = _run_settings(command)
        settings.validate()
        specs = [
            parse_collector_spec(text)
            for text in settings.collection.collector_specs or DEFAULT_COLLECTOR_SPECS
        ]
        if settings.verbose and settings.log_path is None:
            _reject_shared_stderr(specs)

        with logging_scope(verbose=settings.verbose, log_path=settings.log_path):
            chunk_run = ChunkRun(
                settings=settings,
                command=command.command,
                stdout=self._binary("stdout"),
                stderr=self._binary("stderr"),
            )
            result = chunk_run.execute(_open_sources(command.inputs, stdin=self._binary("stdin")))
            logger.info(
                "Run summary: exit=%d chunks=%s dispatched=%d succeeded=%d failed=%d",
                result.exit_code,
                result.chunk_count if result.chunk_count is not None else "?",
                result.pool.dispatched,
                result.pool.succeeded,
                result.pool.failed,
            )
        return result

    def split(self, command: SplitCommand) -> Iterator[str]:
        """Yield each chunk path as soon as the splitter closes it."""

        for path in split_lines(
            _open_sources(command.inputs, stdin=self._binary("stdin")),
            chunk_dir=command.output_dir,
            lines_per_chunk=command.lines_per_chunk,
        ):
            yield str(path)

    def stats(self, command: StatsCommand) -> list[str]:
        text = command.metadata_path.read_text("utf-8")
        records = parse_records(text)
        snapshot = build_run_metrics(records)
        return [
            f"Metadata: {command.metadata_path} ({len(records)} record(s))",
            *render_stats_lines(snapshot=snapshot),
        ]

    def _binary(self, name: str) -> BinaryIO:
        override = {"stdin": self._stdin, "stdout": self._stdout, "stderr": self._stderr}[name]
        if override is not None:
            return override
        return get_binary_stream(name)


def _run_settings(command: ChunkRunCommand) -> Settings:
    settings = Settings.from_env()
    if command.cleanup is not None:
        settings.cleanup = CleanupMode(command.cleanup)
    if command.collectors:
        settings.collection.collector_specs = tuple(command.collectors)
    if command.lines_per_chunk is not None:
        settings.lines_per_chunk = command.lines_per_chunk
    if command.max_attempts is not None:
        settings.retry.max_attempts = command.max_attempts
    if command.max_jobs is not None:
        settings.max_jobs = command.max_jobs
    if command.metadata_path is not None:
        settings.collection.metadata_path = command.metadata_path
    if command.retry_delay is not None:
        settings.retry.delay = command.retry_delay
    if command.retry_fatal is not None:
        settings.retry.fatal = command.retry_fatal
    if command.placeholder is not None:
        settings.placeholder = command.placeholder
    if command.workdir_root is not None:
        settings.workdir_root = command.workdir_root
    settings.verbose = command.verbose or settings.verbose
    if command.log_path is not None:
        settings.log_path = command.log_path
    return settings


def _open_sources(paths: Iterable[Path], *, stdin: BinaryIO) -> Iterator[BinaryIO]:
    """Open inputs one at a time; no paths (or ``-``) reads standard input."""

    paths = list(paths)
    if not paths:
        yield stdin
        return
    for path in paths:
        if path == STDIN_MARKER:
            yield stdin
            continue
        with path.open("rb") as handle:
            yield handle


def _reject_shared_stderr(specs: list[CollectorSpec]) -> None:
    """Verbose diagnostics on stderr must not interleave with collected chunk stderr."""

    shared = [spec.raw for spec in specs if spec.target == TARGET_STDERR]
    if shared:
        raise ValueError(
            f"--verbose needs --log-file while collector {shared[0]!r} writes to stderr.",
        )
