"""Collectors harvest one per-chunk artifact type into an output sink.

A collector receives finished chunks in strictly increasing sequence order
from the collector manager. For each chunk it appends the artifact named by
its suffix to the sink and removes the artifact once consumed, subject to the
``keep`` flag and the run's cleanup policy.
"""

from __future__ import annotations

import gzip
import logging
import os
import shlex
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import BinaryIO

from chunkpipe.execution.runner import ResourceUsage, wait_for_process
from chunkpipe.ledger import read_done_marker
from chunkpipe.metadata import ACTION_COLLECTOR, MetadataRecord
from chunkpipe.models import ERR_SUFFIX, META_SUFFIX, OUT_SUFFIX, CleanupMode, CompletedChunk

logger = logging.getLogger(__name__)

TARGET_STDOUT = "@stdout"
TARGET_STDERR = "@stderr"
COMMAND_TARGET_PREFIX = "|"

FLAG_SUCCESSFUL_ONLY = "ok"
FLAG_KEEP = "keep"
FLAG_GZIP = "gzip"
_FLAGS = (FLAG_SUCCESSFUL_ONLY, FLAG_KEEP, FLAG_GZIP)

DEFAULT_COLLECTOR_SPECS = (
    f"{OUT_SUFFIX}+{FLAG_SUCCESSFUL_ONLY}={TARGET_STDOUT}",
    f"{ERR_SUFFIX}={TARGET_STDERR}",
)


class CollectorSpecError(ValueError):
    """Malformed ``SUFFIX[+FLAG...]=TARGET`` collector spec."""


@dataclass(slots=True, frozen=True)
class CollectorSpec:
    """Parsed collector configuration."""

    raw: str
    suffix: str
    target: str
    successful_only: bool = False
    keep_source: bool = False
    compress: bool = False


def parse_collector_spec(text: str) -> CollectorSpec:
    """Parse ``SUFFIX[+FLAG...]=TARGET``.

    TARGET is ``@stdout``, ``@stderr``, ``|command args`` or a file path.
    FLAGS are ``ok`` (successful chunks only), ``keep`` (keep source files)
    and ``gzip`` (compress the sink).
    """

    head, separator, target = text.partition("=")
    target = target.strip()
    if not separator or not target:
        raise CollectorSpecError(
            f"Invalid collector spec {text!r}. Expected SUFFIX[+FLAG...]=TARGET.",
        )
    suffix, *flags = (part.strip() for part in head.split("+"))
    if not suffix or suffix != os.path.basename(suffix):
        raise CollectorSpecError(f"Invalid collector suffix in {text!r}.")
    unknown = [flag for flag in flags if flag not in _FLAGS]
    if unknown:
        raise CollectorSpecError(
            f"Unknown collector flag(s) {', '.join(unknown)} in {text!r}. "
            f"Supported: {', '.join(_FLAGS)}.",
        )
    if target.startswith(COMMAND_TARGET_PREFIX) and not target[1:].strip():
        raise CollectorSpecError(f"Collector command is empty in {text!r}.")
    return CollectorSpec(
        raw=text,
        suffix=suffix,
        target=target,
        successful_only=FLAG_SUCCESSFUL_ONLY in flags,
        keep_source=FLAG_KEEP in flags,
        compress=FLAG_GZIP in flags,
    )


class Collector(ABC):
    """Sequence-ordered consumer of one artifact suffix."""

    def __init__(
        self,
        *,
        name: str,
        suffix: str,
        successful_only: bool = False,
        keep_source: bool = False,
        compress: bool = False,
        cleanup: CleanupMode = CleanupMode.SUCCESSFUL,
    ) -> None:
        self.name = name
        self.suffix = suffix
        self.successful_only = successful_only
        self.keep_source = keep_source
        self.compress = compress
        self.cleanup = cleanup
        self.collected: list[int] = []
        self.failed = False
        self._sink: BinaryIO | None = None
        self._compressor: gzip.GzipFile | None = None
        self._started_at: datetime | None = None
        self._start_monotonic = 0.0

    def open(self) -> None:
        self._started_at = datetime.now(tz=UTC)
        self._start_monotonic = time.monotonic()
        raw = self._open_sink()
        if self.compress:
            self._compressor = gzip.GzipFile(fileobj=raw, mode="wb")
            self._sink = self._compressor
        else:
            self._sink = raw

    def collect(self, chunk: CompletedChunk) -> None:
        """Append the chunk's artifact to the sink; missing artifacts are skipped."""

        if self._sink is None:
            raise RuntimeError(f"Collector {self.name} is not open.")
        exit_code = read_done_marker(chunk.done_path)
        if self.successful_only and exit_code != 0:
            return

        path = chunk.artifact_path(self.suffix)
        try:
            source = path.open("rb")
        except FileNotFoundError:
            return
        with source:
            shutil.copyfileobj(source, self._sink)
        self._sink.flush()
        self.collected.append(chunk.sequence)

        if not self.keep_source and self.cleanup.removes_artifacts(exit_code):
            path.unlink(missing_ok=True)

    def close(self) -> MetadataRecord:
        """Close the sink and return this collector's own measurement."""

        exit_status = 0
        usage: ResourceUsage | None = None
        try:
            if self._compressor is not None:
                self._compressor.close()
            exit_status, usage = self._close_sink()
        except OSError as error:
            logger.error("Collector %s failed to close its sink: %s", self.name, error)
            exit_status = 1
        if exit_status != 0:
            self.failed = True
        elif self.failed:
            exit_status = 1

        return MetadataRecord.from_run(
            action=ACTION_COLLECTOR,
            exit_status=exit_status,
            wall_seconds=time.monotonic() - self._start_monotonic,
            usage=usage,
            started_at=self._started_at,
            finished_at=datetime.now(tz=UTC),
            tags={
                "collector": self.name,
                "suffix": self.suffix,
                "collected": str(len(self.collected)),
            },
        )

    @abstractmethod
    def _open_sink(self) -> BinaryIO:
        """Open and return the raw output sink."""

    @abstractmethod
    def _close_sink(self) -> tuple[int, ResourceUsage | None]:
        """Release the sink and report its exit status and resource usage."""


class StreamCollector(Collector):
    """Appends to an already open binary stream such as the run's stdout."""

    def __init__(self, stream: BinaryIO, **kwargs) -> None:
        super().__init__(**kwargs)
        self.stream = stream

    def _open_sink(self) -> BinaryIO:
        return self.stream

    def _close_sink(self) -> tuple[int, ResourceUsage | None]:
        self.stream.flush()
        return 0, None


class FileCollector(Collector):
    """Appends to a file, or truncates it first when ``append`` is False.

    ``path=None`` discards the content.
    """

    def __init__(self, path: Path | None, *, append: bool = True, **kwargs) -> None:
        super().__init__(**kwargs)
        self.path = path
        self.append = append
        self._handle: BinaryIO | None = None

    def _open_sink(self) -> BinaryIO:
        if self.path is None:
            self._handle = open(os.devnull, "wb")  # noqa: PTH123, SIM115
        else:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self.path.open("ab" if self.append else "wb")
        return self._handle

    def _close_sink(self) -> tuple[int, ResourceUsage | None]:
        if self._handle is not None:
            self._handle.close()
        return 0, None


class CommandCollector(Collector):
    """Pipes artifact content into one long-lived collector process."""

    def __init__(self, argv: list[str], **kwargs) -> None:
        super().__init__(**kwargs)
        self.argv = argv
        self._process: subprocess.Popen[bytes] | None = None

    def _open_sink(self) -> BinaryIO:
        try:
            self._process = subprocess.Popen(self.argv, stdin=subprocess.PIPE)  # noqa: S603
        except OSError as error:
            raise OSError(f"Collector command failed to start: {self.argv[0]}: {error}") from error
        if self._process.stdin is None:
            raise RuntimeError("Collector process has no stdin pipe.")
        return self._process.stdin

    def _close_sink(self) -> tuple[int, ResourceUsage | None]:
        if self._process is None:
            return 1, None
        try:
            if self._process.stdin is not None:
                self._process.stdin.close()
        except BrokenPipeError:
            logger.warning("Collector %s closed its input early", self.name)
        exit_code, usage, _ = wait_for_process(self._process)
        if exit_code != 0:
            logger.error("Collector %s exited with status %d", self.name, exit_code)
        return exit_code, usage


def build_collector(
    spec: CollectorSpec,
    *,
    cleanup: CleanupMode,
    stdout: BinaryIO,
    stderr: BinaryIO,
) -> Collector:
    options = {
        "name": spec.raw,
        "suffix": spec.suffix,
        "successful_only": spec.successful_only,
        "keep_source": spec.keep_source,
        "compress": spec.compress,
        "cleanup": cleanup,
    }
    if spec.target == TARGET_STDOUT:
        return StreamCollector(stdout, **options)
    if spec.target == TARGET_STDERR:
        return StreamCollector(stderr, **options)
    if spec.target.startswith(COMMAND_TARGET_PREFIX):
        argv = shlex.split(spec.target[len(COMMAND_TARGET_PREFIX) :])
        return CommandCollector(argv, **options)
    return FileCollector(Path(spec.target), **options)


def build_collectors(
    specs: tuple[str, ...],
    *,
    metadata_path: Path | None,
    cleanup: CleanupMode,
    stdout: BinaryIO,
    stderr: BinaryIO,
) -> list[Collector]:
    """Caller specs (or the stdout/stderr defaults) plus the metadata collector."""

    parsed = [parse_collector_spec(text) for text in (specs or DEFAULT_COLLECTOR_SPECS)]
    collectors = [
        build_collector(spec, cleanup=cleanup, stdout=stdout, stderr=stderr) for spec in parsed
    ]
    collectors.append(metadata_collector(metadata_path, cleanup=cleanup))
    return collectors


def metadata_collector(path: Path | None, *, cleanup: CleanupMode) -> FileCollector:
    return FileCollector(
        path,
        append=False,
        name="metadata",
        suffix=META_SUFFIX,
        cleanup=cleanup,
    )
