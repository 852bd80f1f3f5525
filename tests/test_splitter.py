from __future__ import annotations

import io
from pathlib import Path

import allure
import pytest

from chunkpipe.splitter import read_chunk_count, split_lines, write_chunk_count

pytestmark = [
    allure.epic("Chunk Pipeline"),
    allure.feature("Splitter"),
]


def _lines(count: int) -> bytes:
    return b"".join(f"line {index}\n".encode() for index in range(1, count + 1))


def test_split_lines_writes_numbered_chunks_and_count(tmp_path: Path) -> None:
    paths = list(
        split_lines([io.BytesIO(_lines(2500))], chunk_dir=tmp_path, lines_per_chunk=1000),
    )

    assert [path.name for path in paths] == ["1", "2", "3"]
    assert read_chunk_count(tmp_path) == 3
    assert (tmp_path / "1").read_bytes().count(b"\n") == 1000
    assert (tmp_path / "3").read_bytes().count(b"\n") == 500
    assert b"".join(path.read_bytes() for path in paths) == _lines(2500)


def test_split_lines_continues_chunks_across_sources(tmp_path: Path) -> None:
    sources = [io.BytesIO(b"a\nb\n"), io.BytesIO(b"c\n"), io.BytesIO(b"d")]

    paths = list(split_lines(sources, chunk_dir=tmp_path, lines_per_chunk=3))

    assert [path.read_bytes() for path in paths] == [b"a\nb\nc\n", b"d"]


def test_split_lines_yields_each_chunk_only_after_it_is_closed(tmp_path: Path) -> None:
    iterator = split_lines([io.BytesIO(_lines(4))], chunk_dir=tmp_path, lines_per_chunk=2)

    first = next(iterator)
    assert first.read_bytes() == b"line 1\nline 2\n"
    assert not (tmp_path / "2").exists()
    assert read_chunk_count(tmp_path) is None

    rest = list(iterator)
    assert [path.name for path in rest] == ["2"]
    assert read_chunk_count(tmp_path) == 2


def test_split_lines_with_empty_input_reports_zero_chunks(tmp_path: Path) -> None:
    assert list(split_lines([io.BytesIO(b"")], chunk_dir=tmp_path, lines_per_chunk=10)) == []
    assert read_chunk_count(tmp_path) == 0


def test_split_lines_stops_without_writing_count(tmp_path: Path) -> None:
    emitted: list[Path] = []

    for path in split_lines(
        [io.BytesIO(_lines(10))],
        chunk_dir=tmp_path,
        lines_per_chunk=2,
        should_stop=lambda: len(emitted) >= 2,
    ):
        emitted.append(path)

    assert [path.name for path in emitted] == ["1", "2"]
    assert read_chunk_count(tmp_path) is None


def test_split_lines_rejects_non_positive_chunk_size(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="lines_per_chunk"):
        list(split_lines([io.BytesIO(b"x\n")], chunk_dir=tmp_path, lines_per_chunk=0))


def test_read_chunk_count_treats_garbage_as_unknown(tmp_path: Path) -> None:
    (tmp_path / "count").write_text("many\n", "utf-8")
    assert read_chunk_count(tmp_path) is None

    write_chunk_count(tmp_path, 7)
    assert read_chunk_count(tmp_path) == 7
