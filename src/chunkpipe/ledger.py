"""Completion ledger: write-once terminal records observed in sequence order.

Workers record each chunk's terminal exit code exactly once. The record is
kept in an indexed in-memory table guarded by a condition variable, and is
also persisted as the chunk's ``.done`` marker so collectors and operators can
read it from the working directory. The collector manager waits on the
condition variable instead of polling the filesystem.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from chunkpipe.models import Chunk, ChunkState, CompletedChunk

logger = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    """Violation of the one-worker-per-chunk or write-once invariants."""


class CompletionLedger:
    """State-tagged chunk table plus ordered completion signalling."""

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._chunks: dict[int, Chunk] = {}
        self._total: int | None = None
        self._closed = False
        self._stopped = False

    def register(self, path: Path) -> Chunk:
        chunk = Chunk.from_path(path)
        with self._condition:
            if chunk.sequence in self._chunks:
                raise LedgerError(f"Chunk {chunk.sequence} is already registered.")
            self._chunks[chunk.sequence] = chunk
        return chunk

    def claim(self, sequence: int) -> Chunk:
        """Move a pending chunk to running; a chunk can be claimed once."""

        with self._condition:
            chunk = self._require(sequence)
            if chunk.state is not ChunkState.PENDING:
                raise LedgerError(
                    f"Chunk {sequence} cannot be claimed from state {chunk.state.value}.",
                )
            chunk.state = ChunkState.RUNNING
            return chunk

    def record_done(self, sequence: int, *, exit_code: int, state: ChunkState) -> None:
        """Write the terminal exit code once and wake waiting observers."""

        with self._condition:
            chunk = self._require(sequence)
            if chunk.is_terminal:
                raise LedgerError(f"Chunk {sequence} already has a terminal record.")
            if chunk.done_path.exists():
                raise LedgerError(f"Done marker already exists: {chunk.done_path}")
            write_done_marker(chunk.done_path, exit_code)
            chunk.exit_code = exit_code
            chunk.state = state
            self._condition.notify_all()

    def mark_aborted(self, path: Path) -> None:
        """Register a chunk that was never dispatched; no done marker is written."""

        chunk = Chunk.from_path(path)
        with self._condition:
            existing = self._chunks.setdefault(chunk.sequence, chunk)
            if existing.state is ChunkState.PENDING:
                existing.state = ChunkState.ABORTED
            self._condition.notify_all()

    def set_total(self, total: int) -> None:
        """Splitter signal: no chunk beyond ``total`` will ever exist."""

        with self._condition:
            self._total = total
            self._condition.notify_all()

    def close(self) -> None:
        """Dispatch finished: absent records will never appear."""

        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def stop(self) -> None:
        with self._condition:
            self._stopped = True
            self._condition.notify_all()

    @property
    def total(self) -> int | None:
        with self._condition:
            return self._total

    def wait_for(self, sequence: int, timeout: float | None = None) -> CompletedChunk | None:
        """Block until ``sequence`` is recorded; None once it provably never will be."""

        with self._condition:
            ready = self._condition.wait_for(
                lambda: self._is_recorded(sequence) or self._is_final_gap(sequence),
                timeout=timeout,
            )
            if not ready or not self._is_recorded(sequence):
                return None
            chunk = self._chunks[sequence]
            return CompletedChunk(sequence=chunk.sequence, input_path=chunk.input_path)

    def snapshot(self) -> list[Chunk]:
        with self._condition:
            return [self._chunks[key] for key in sorted(self._chunks)]

    def _require(self, sequence: int) -> Chunk:
        try:
            return self._chunks[sequence]
        except KeyError as error:
            raise LedgerError(f"Chunk {sequence} is not registered.") from error

    def _is_recorded(self, sequence: int) -> bool:
        chunk = self._chunks.get(sequence)
        return chunk is not None and chunk.exit_code is not None

    def _is_final_gap(self, sequence: int) -> bool:
        if self._stopped or self._closed:
            return True
        return self._total is not None and sequence > self._total


def write_done_marker(path: Path, exit_code: int) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(f"{exit_code}\n", "utf-8")
    tmp_path.replace(path)


def read_done_marker(path: Path) -> int | None:
    """Return the recorded exit code, or None when the marker is missing or malformed."""

    try:
        raw = path.read_text("utf-8").strip()
    except (OSError, UnicodeDecodeError):
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Malformed done marker %s: %r", path, raw[:40])
        return None
