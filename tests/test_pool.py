from __future__ import annotations

import queue
import signal
import threading
import time
from pathlib import Path

import allure
import pytest

from chunkpipe.ledger import CompletionLedger
from chunkpipe.models import ABORT_EXIT_CODE, Chunk, ChunkState
from chunkpipe.pool import END_OF_CHUNKS, WorkerPool
from chunkpipe.shutdown import ShutdownState

pytestmark = [
    allure.epic("Chunk Pipeline"),
    allure.feature("Worker Pool"),
]


class _TrackingProcessor:
    def __init__(
        self,
        ledger: CompletionLedger,
        *,
        delay: float = 0.02,
        abort_on: int | None = None,
    ) -> None:
        self.ledger = ledger
        self.delay = delay
        self.abort_on = abort_on
        self.active = 0
        self.peak = 0
        self.seen: list[int] = []
        self._lock = threading.Lock()

    def process(self, chunk: Chunk) -> int:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.seen.append(chunk.sequence)
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1
        if chunk.sequence == self.abort_on:
            self.ledger.record_done(chunk.sequence, exit_code=1, state=ChunkState.FAILED_EXHAUSTED)
            return ABORT_EXIT_CODE
        self.ledger.record_done(chunk.sequence, exit_code=0, state=ChunkState.SUCCEEDED)
        return 0


def _chunks(tmp_path: Path, count: int) -> queue.Queue[Path | None]:
    chunks: queue.Queue[Path | None] = queue.Queue()
    for sequence in range(1, count + 1):
        chunks.put(tmp_path / str(sequence))
    chunks.put(END_OF_CHUNKS)
    return chunks


def test_pool_never_exceeds_max_jobs(tmp_path: Path) -> None:
    ledger = CompletionLedger()
    processor = _TrackingProcessor(ledger, delay=0.05)
    pool = WorkerPool(worker=processor, ledger=ledger, max_jobs=3)

    summary = pool.run(_chunks(tmp_path, 10))

    assert processor.peak <= 3
    assert processor.peak >= 2
    assert sorted(processor.seen) == list(range(1, 11))
    assert summary.dispatched == 10
    assert summary.succeeded == 10
    assert summary.ok


def test_single_job_pool_dispatches_in_fifo_order(tmp_path: Path) -> None:
    ledger = CompletionLedger()
    processor = _TrackingProcessor(ledger, delay=0.0)

    WorkerPool(worker=processor, ledger=ledger, max_jobs=1).run(_chunks(tmp_path, 5))

    assert processor.seen == [1, 2, 3, 4, 5]


def test_abort_code_stops_further_dispatch(tmp_path: Path) -> None:
    ledger = CompletionLedger()
    processor = _TrackingProcessor(ledger, delay=0.0, abort_on=2)
    chunks = _chunks(tmp_path, 6)
    pool = WorkerPool(worker=processor, ledger=ledger, max_jobs=1)

    summary = pool.run(chunks)

    assert processor.seen == [1, 2]
    assert summary.aborted is True
    assert summary.failed == 1
    assert not summary.ok
    assert chunks.get_nowait() == tmp_path / "3"


def test_abort_lets_in_flight_chunks_finish(tmp_path: Path) -> None:
    ledger = CompletionLedger()
    processor = _TrackingProcessor(ledger, delay=0.1, abort_on=1)
    pool = WorkerPool(worker=processor, ledger=ledger, max_jobs=2)

    summary = pool.run(_chunks(tmp_path, 8))

    assert summary.aborted is True
    assert sorted(processor.seen)[:2] == [1, 2]
    states = {chunk.sequence: chunk.state for chunk in ledger.snapshot()}
    assert states[2] is ChunkState.SUCCEEDED
    assert len(processor.seen) < 8


def test_shutdown_before_run_dispatches_nothing(tmp_path: Path) -> None:
    ledger = CompletionLedger()
    processor = _TrackingProcessor(ledger)
    shutdown = ShutdownState()
    shutdown.request(signal.SIGTERM)

    summary = WorkerPool(worker=processor, ledger=ledger, max_jobs=2, shutdown=shutdown).run(
        _chunks(tmp_path, 3),
    )

    assert processor.seen == []
    assert summary.dispatched == 0


def test_pool_rejects_non_positive_concurrency() -> None:
    with pytest.raises(ValueError, match="max_jobs"):
        ledger = CompletionLedger()
        WorkerPool(worker=_TrackingProcessor(ledger), ledger=ledger, max_jobs=0)
