"""Collector manager: replay chunk completions to collectors in sequence order."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field

from chunkpipe.collectors import Collector
from chunkpipe.ledger import CompletionLedger
from chunkpipe.metadata import MetadataRecord
from chunkpipe.models import CompletedChunk
from chunkpipe.shutdown import ShutdownState

logger = logging.getLogger(__name__)

_SENTINEL = object()


@dataclass(slots=True)
class CollectionResult:
    """What the manager emitted and how each collector ended."""

    emitted: list[int] = field(default_factory=list)
    records: list[MetadataRecord] = field(default_factory=list)
    failed_collectors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_collectors


class CollectorManager:
    """Single scanner thread feeding one queue per collector thread.

    The scanner waits on the ledger for ``next_sequence``, emits it to every
    collector and advances. It ends when the ledger reports that the next
    sequence will never be recorded, or when shutdown is requested.
    """

    def __init__(
        self,
        *,
        ledger: CompletionLedger,
        collectors: list[Collector],
        shutdown: ShutdownState | None = None,
    ) -> None:
        self.ledger = ledger
        self.collectors = collectors
        self.shutdown = shutdown or ShutdownState()
        self.next_sequence = 1
        self._queues: list[queue.Queue[object]] = [queue.Queue() for _ in collectors]
        self._scanner: threading.Thread | None = None
        self._collector_threads: list[threading.Thread] = []
        self._result = CollectionResult()
        self._lock = threading.Lock()

    def start(self) -> None:
        for index, (collector, items) in enumerate(zip(self.collectors, self._queues, strict=True)):
            thread = threading.Thread(
                target=self._collector_loop,
                args=(collector, items),
                name=f"chunkpipe-collector-{index}",
                daemon=True,
            )
            thread.start()
            self._collector_threads.append(thread)
        self._scanner = threading.Thread(
            target=self._scan,
            name="chunkpipe-collector-manager",
            daemon=True,
        )
        self._scanner.start()
        logger.debug("Collector manager started with %d collector(s)", len(self.collectors))

    def join(self) -> CollectionResult:
        """Wait for the scan and every collector to finish."""

        if self._scanner is not None:
            self._scanner.join()
        for thread in self._collector_threads:
            thread.join()
        self._result.records.sort(key=lambda record: record.tags.get("collector", ""))
        return self._result

    def _scan(self) -> None:
        try:
            while not self.shutdown.requested:
                completed = self.ledger.wait_for(self.next_sequence)
                if completed is None:
                    break
                self._emit(completed)
                self.next_sequence += 1
        finally:
            for items in self._queues:
                items.put(_SENTINEL)
            logger.info("Collector manager emitted %d chunk(s)", len(self._result.emitted))

    def _emit(self, completed: CompletedChunk) -> None:
        logger.debug("Emitting chunk %d to collectors", completed.sequence)
        self._result.emitted.append(completed.sequence)
        for items in self._queues:
            items.put(completed)

    def _collector_loop(self, collector: Collector, items: queue.Queue[object]) -> None:
        opened = False
        try:
            collector.open()
            opened = True
        except Exception:
            logger.exception("Collector %s failed to open", collector.name)
            collector.failed = True

        while True:
            item = items.get()
            if item is _SENTINEL:
                break
            if not opened or collector.failed or self.shutdown.requested:
                continue
            try:
                collector.collect(item)
            except Exception:
                logger.exception("Collector %s failed on chunk %d", collector.name, item.sequence)
                collector.failed = True

        record = collector.close()
        with self._lock:
            self._result.records.append(record)
            if collector.failed:
                self._result.failed_collectors.append(collector.name)
