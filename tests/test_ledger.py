from __future__ import annotations

import threading
import time
from pathlib import Path

import allure
import pytest

from chunkpipe.ledger import CompletionLedger, LedgerError, read_done_marker
from chunkpipe.models import ChunkState

pytestmark = [
    allure.epic("Chunk Pipeline"),
    allure.feature("Completion Ledger"),
]


def _chunk_file(directory: Path, sequence: int) -> Path:
    path = directory / str(sequence)
    path.write_bytes(b"data\n")
    return path


def test_record_done_writes_marker_once(tmp_path: Path) -> None:
    ledger = CompletionLedger()
    chunk = ledger.register(_chunk_file(tmp_path, 1))
    ledger.claim(1)

    ledger.record_done(1, exit_code=3, state=ChunkState.FAILED_EXHAUSTED)

    assert read_done_marker(chunk.done_path) == 3
    assert read_done_marker(chunk.done_path) == 3
    with pytest.raises(LedgerError, match="already has a terminal record"):
        ledger.record_done(1, exit_code=0, state=ChunkState.SUCCEEDED)
    assert read_done_marker(chunk.done_path) == 3


def test_chunk_can_only_be_claimed_once(tmp_path: Path) -> None:
    ledger = CompletionLedger()
    ledger.register(_chunk_file(tmp_path, 1))
    ledger.claim(1)

    with pytest.raises(LedgerError, match="cannot be claimed"):
        ledger.claim(1)
    with pytest.raises(LedgerError, match="already registered"):
        ledger.register(tmp_path / "1")
    with pytest.raises(LedgerError, match="not registered"):
        ledger.claim(2)


def test_read_done_marker_fails_closed(tmp_path: Path) -> None:
    marker = tmp_path / "1.done"

    assert read_done_marker(marker) is None
    marker.write_text("not-a-number\n", "utf-8")
    assert read_done_marker(marker) is None
    marker.write_bytes(b"\xff\xfe")
    assert read_done_marker(marker) is None
    marker.write_text(" 0 \n", "utf-8")
    assert read_done_marker(marker) == 0


def test_wait_for_blocks_until_the_requested_sequence_is_recorded(tmp_path: Path) -> None:
    ledger = CompletionLedger()
    for sequence in (1, 2):
        ledger.register(_chunk_file(tmp_path, sequence))
        ledger.claim(sequence)
    results: list[int | None] = []

    def _wait() -> None:
        completed = ledger.wait_for(1, timeout=5)
        results.append(completed.sequence if completed is not None else None)

    waiter = threading.Thread(target=_wait)
    waiter.start()
    ledger.record_done(2, exit_code=0, state=ChunkState.SUCCEEDED)
    time.sleep(0.05)
    assert results == []

    ledger.record_done(1, exit_code=0, state=ChunkState.SUCCEEDED)
    waiter.join(timeout=5)
    assert results == [1]


def test_wait_for_reports_end_of_stream_past_total(tmp_path: Path) -> None:
    ledger = CompletionLedger()
    ledger.register(_chunk_file(tmp_path, 1))
    ledger.claim(1)
    ledger.record_done(1, exit_code=0, state=ChunkState.SUCCEEDED)
    ledger.set_total(1)

    completed = ledger.wait_for(1, timeout=1)
    assert completed is not None
    assert completed.done_path == tmp_path / "1.done"
    assert ledger.wait_for(2, timeout=1) is None
    assert ledger.total == 1


def test_wait_for_stops_at_aborted_gap_once_closed(tmp_path: Path) -> None:
    ledger = CompletionLedger()
    ledger.mark_aborted(_chunk_file(tmp_path, 1))
    ledger.close()

    assert ledger.wait_for(1, timeout=1) is None
    assert not (tmp_path / "1.done").exists()
    assert [chunk.state for chunk in ledger.snapshot()] == [ChunkState.ABORTED]


def test_stop_wakes_waiters(tmp_path: Path) -> None:
    ledger = CompletionLedger()
    outcome: list[object] = []
    waiter = threading.Thread(target=lambda: outcome.append(ledger.wait_for(1)))
    waiter.start()

    ledger.stop()
    waiter.join(timeout=5)

    assert not waiter.is_alive()
    assert outcome == [None]
