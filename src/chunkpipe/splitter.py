"""Split line-oriented input into numbered chunk files."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import BinaryIO

from chunkpipe.models import COUNT_FILE_NAME

logger = logging.getLogger(__name__)


def split_lines(
    sources: Iterable[BinaryIO],
    *,
    chunk_dir: Path,
    lines_per_chunk: int,
    should_stop: Callable[[], bool] | None = None,
) -> Iterator[Path]:
    """Write ``lines_per_chunk`` lines per file named ``1``, ``2``, ... and yield each once closed.

    The count file is written only when every source was consumed.
    """

    if lines_per_chunk <= 0:
        raise ValueError("lines_per_chunk must be a positive integer.")
    chunk_dir.mkdir(parents=True, exist_ok=True)

    sequence = 0
    handle: BinaryIO | None = None
    lines_in_chunk = 0
    try:
        for source in sources:
            for line in source:
                if handle is None:
                    if should_stop is not None and should_stop():
                        logger.info("Splitter stopped after %d chunk(s)", sequence)
                        return
                    sequence += 1
                    handle = (chunk_dir / str(sequence)).open("wb")
                    lines_in_chunk = 0
                handle.write(line)
                lines_in_chunk += 1
                if lines_in_chunk >= lines_per_chunk:
                    handle.close()
                    handle = None
                    yield chunk_dir / str(sequence)
        if handle is not None:
            handle.close()
            handle = None
            yield chunk_dir / str(sequence)
    finally:
        if handle is not None:
            handle.close()

    write_chunk_count(chunk_dir, sequence)
    logger.debug("Splitter finished: %d chunk(s)", sequence)


def write_chunk_count(chunk_dir: Path, count: int) -> None:
    path = chunk_dir / COUNT_FILE_NAME
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(f"{count}\n", "utf-8")
    tmp_path.replace(path)


def read_chunk_count(chunk_dir: Path) -> int | None:
    """Return the final chunk count, or None while the splitter has not finished."""

    try:
        raw = (chunk_dir / COUNT_FILE_NAME).read_text("utf-8").strip()
    except OSError:
        return None
    if not raw.isdigit():
        return None
    return int(raw)
