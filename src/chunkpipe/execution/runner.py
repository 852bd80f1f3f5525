"""Subprocess-based command runner for chunk attempts."""

from __future__ import annotations

import os
import subprocess
import sys
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import BinaryIO

# Shell conventions for commands that could not be started.
EXIT_NOT_FOUND = 127
EXIT_CANNOT_EXECUTE = 126
SIGNAL_EXIT_BASE = 128


class CommandRunError(RuntimeError):
    """Command could not be started; ``exit_code`` follows shell conventions."""

    def __init__(self, message: str, *, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass(slots=True)
class ResourceUsage:
    """Resource usage of one reaped child process."""

    user_seconds: float
    system_seconds: float
    max_rss_kb: int
    block_input: int
    block_output: int
    voluntary_context_switches: int
    involuntary_context_switches: int


@dataclass(slots=True)
class CommandRunRequest:
    """Inputs required to execute one chunk attempt."""

    argv: list[str]
    stdin_path: Path
    stdout_path: Path
    stderr_path: Path
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: float = 5.0
    poll_interval_seconds: float = 0.02


@dataclass(slots=True)
class CommandRunResult:
    """Execution outcome of one attempt."""

    exit_code: int
    interrupted: bool
    started_at: datetime
    finished_at: datetime
    wall_seconds: float
    usage: ResourceUsage | None


def render_argv(template: Sequence[str], *, placeholder: str, value: str) -> list[str]:
    """Replace every occurrence of ``placeholder`` in every argument."""

    if not template:
        raise CommandRunError("Command is empty.", exit_code=EXIT_NOT_FOUND)
    return [argument.replace(placeholder, value) for argument in template]


class CommandRunner:
    """Run a command with a chunk on stdin.

    Stdout overwrites ``stdout_path`` while stderr is appended to
    ``stderr_path`` so diagnostics from earlier attempts survive.
    """

    def run(self, request: CommandRunRequest) -> CommandRunResult:
        started_at = datetime.now(tz=UTC)
        start_monotonic = time.monotonic()
        with (
            request.stdin_path.open("rb") as stdin_handle,
            request.stdout_path.open("wb") as stdout_handle,
            request.stderr_path.open("ab") as stderr_handle,
        ):
            try:
                process = subprocess.Popen(  # noqa: S603
                    request.argv,
                    stdin=stdin_handle,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                )
            except FileNotFoundError as error:
                _write_error(stderr_handle, f"command not found: {request.argv[0]}")
                raise CommandRunError(
                    f"Command not found: {request.argv[0]}",
                    exit_code=EXIT_NOT_FOUND,
                ) from error
            except PermissionError as error:
                _write_error(stderr_handle, f"permission denied: {request.argv[0]}")
                raise CommandRunError(
                    f"Command is not executable: {request.argv[0]}",
                    exit_code=EXIT_CANNOT_EXECUTE,
                ) from error
            except OSError as error:
                _write_error(stderr_handle, f"failed to start {request.argv[0]}: {error}")
                raise CommandRunError(
                    f"Command failed to start: {error}",
                    exit_code=EXIT_CANNOT_EXECUTE,
                ) from error

        exit_code, usage, interrupted = wait_for_process(
            process,
            shutdown_requested=request.shutdown_requested,
            graceful_shutdown_seconds=request.graceful_shutdown_seconds,
            poll_interval_seconds=request.poll_interval_seconds,
        )
        return CommandRunResult(
            exit_code=exit_code,
            interrupted=interrupted,
            started_at=started_at,
            finished_at=datetime.now(tz=UTC),
            wall_seconds=time.monotonic() - start_monotonic,
            usage=usage,
        )


def wait_for_process(
    process: subprocess.Popen[bytes],
    *,
    shutdown_requested: Callable[[], bool] | None = None,
    graceful_shutdown_seconds: float = 5.0,
    poll_interval_seconds: float = 0.02,
) -> tuple[int, ResourceUsage | None, bool]:
    """Wait for ``process`` and return (exit code, resource usage, interrupted)."""

    shutdown_deadline: float | None = None
    interrupted = False
    while True:
        reaped = _reap(process)
        if reaped is not None:
            return reaped[0], reaped[1], interrupted

        if shutdown_requested is not None and shutdown_requested():
            interrupted = True
            now = time.monotonic()
            if shutdown_deadline is None:
                shutdown_deadline = now + max(0.0, graceful_shutdown_seconds)
            if now >= shutdown_deadline:
                _terminate_process(process)
                return normalize_exit_code(process.returncode), None, interrupted

        time.sleep(poll_interval_seconds)


def normalize_exit_code(returncode: int | None) -> int:
    """Map ``-signum`` return codes to the shell's ``128 + signum`` convention."""

    if returncode is None:
        return SIGNAL_EXIT_BASE
    if returncode < 0:
        return SIGNAL_EXIT_BASE - returncode
    return returncode


def _reap(process: subprocess.Popen[bytes]) -> tuple[int, ResourceUsage | None] | None:
    if not hasattr(os, "wait4"):
        returncode = process.poll()
        if returncode is None:
            return None
        return normalize_exit_code(returncode), None

    try:
        pid, status, rusage = os.wait4(process.pid, os.WNOHANG)
    except ChildProcessError:
        returncode = process.poll()
        if returncode is None:
            return None
        return normalize_exit_code(returncode), None
    if pid == 0:
        return None

    process.returncode = os.waitstatus_to_exitcode(status)
    return normalize_exit_code(process.returncode), _usage_from_rusage(rusage)


def _usage_from_rusage(rusage) -> ResourceUsage:
    max_rss = int(rusage.ru_maxrss)
    if sys.platform == "darwin":
        max_rss //= 1024
    return ResourceUsage(
        user_seconds=float(rusage.ru_utime),
        system_seconds=float(rusage.ru_stime),
        max_rss_kb=max_rss,
        block_input=int(rusage.ru_inblock),
        block_output=int(rusage.ru_oublock),
        voluntary_context_switches=int(rusage.ru_nvcsw),
        involuntary_context_switches=int(rusage.ru_nivcsw),
    )


def _write_error(handle: BinaryIO, message: str) -> None:
    handle.write(f"chunkpipe: {message}\n".encode())


def _terminate_process(process: subprocess.Popen[bytes] | subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
