from __future__ import annotations

import gzip
import io
import shlex
import sys
from pathlib import Path

import allure
import pytest

from chunkpipe.collectors import (
    CollectorSpecError,
    CommandCollector,
    FileCollector,
    StreamCollector,
    build_collector,
    build_collectors,
    parse_collector_spec,
)
from chunkpipe.ledger import write_done_marker
from chunkpipe.models import CleanupMode, CompletedChunk

pytestmark = [
    allure.epic("Chunk Pipeline"),
    allure.feature("Collectors"),
]


def _finished_chunk(
    directory: Path,
    sequence: int,
    *,
    exit_code: int,
    out: bytes | None = None,
) -> CompletedChunk:
    input_path = directory / str(sequence)
    input_path.write_bytes(b"input\n")
    if out is not None:
        (directory / f"{sequence}.out").write_bytes(out)
    write_done_marker(directory / f"{sequence}.done", exit_code)
    return CompletedChunk(sequence=sequence, input_path=input_path)


def test_parse_collector_spec_reads_suffix_flags_and_target() -> None:
    spec = parse_collector_spec(".csv+ok+keep+gzip=results/all.csv.gz")

    assert spec.suffix == ".csv"
    assert spec.target == "results/all.csv.gz"
    assert spec.successful_only is True
    assert spec.keep_source is True
    assert spec.compress is True

    plain = parse_collector_spec(".err=@stderr")
    assert (plain.successful_only, plain.keep_source, plain.compress) == (False, False, False)


@pytest.mark.parametrize(
    ("text", "message"),
    [
        (".out", "Expected SUFFIX"),
        (".out=", "Expected SUFFIX"),
        ("=@stdout", "Invalid collector suffix"),
        ("../x=@stdout", "Invalid collector suffix"),
        (".out+fast=@stdout", "Unknown collector flag"),
        (".out=|  ", "command is empty"),
    ],
)
def test_parse_collector_spec_rejects_malformed_specs(text: str, message: str) -> None:
    with pytest.raises(CollectorSpecError, match=message):
        parse_collector_spec(text)


def test_successful_only_collector_skips_failed_chunk_without_deleting(tmp_path: Path) -> None:
    sink = io.BytesIO()
    collector = StreamCollector(sink, name="out", suffix=".out", successful_only=True)
    ok_chunk = _finished_chunk(tmp_path, 1, exit_code=0, out=b"first\n")
    failed_chunk = _finished_chunk(tmp_path, 2, exit_code=1, out=b"second\n")

    collector.open()
    collector.collect(ok_chunk)
    collector.collect(failed_chunk)
    record = collector.close()

    assert sink.getvalue() == b"first\n"
    assert not (tmp_path / "1.out").exists()
    assert (tmp_path / "2.out").exists()
    assert collector.collected == [1]
    assert record.exit_status == 0
    assert record.tags["collected"] == "1"


def test_successful_only_collector_treats_malformed_marker_as_failure(tmp_path: Path) -> None:
    sink = io.BytesIO()
    collector = StreamCollector(sink, name="out", suffix=".out", successful_only=True)
    chunk = _finished_chunk(tmp_path, 1, exit_code=0, out=b"data\n")
    (tmp_path / "1.done").write_text("garbage\n", "utf-8")

    collector.open()
    collector.collect(chunk)
    collector.close()

    assert sink.getvalue() == b""
    assert (tmp_path / "1.out").exists()


def test_collector_keeps_failed_chunk_artifacts_under_successful_cleanup(tmp_path: Path) -> None:
    sink = io.BytesIO()
    collector = StreamCollector(sink, name="out", suffix=".out")
    chunk = _finished_chunk(tmp_path, 1, exit_code=2, out=b"partial\n")

    collector.open()
    collector.collect(chunk)
    collector.close()

    assert sink.getvalue() == b"partial\n"
    assert (tmp_path / "1.out").exists()


def test_keep_flag_and_missing_artifacts(tmp_path: Path) -> None:
    sink = io.BytesIO()
    collector = StreamCollector(
        sink,
        name="out",
        suffix=".out",
        keep_source=True,
        cleanup=CleanupMode.ALL,
    )
    with_output = _finished_chunk(tmp_path, 1, exit_code=0, out=b"kept\n")
    without_output = _finished_chunk(tmp_path, 2, exit_code=0)

    collector.open()
    collector.collect(with_output)
    collector.collect(without_output)
    collector.close()

    assert sink.getvalue() == b"kept\n"
    assert (tmp_path / "1.out").exists()
    assert collector.collected == [1]


def test_file_collector_appends_with_gzip(tmp_path: Path) -> None:
    target = tmp_path / "sink" / "all.out.gz"
    collector = FileCollector(target, name="gz", suffix=".out", compress=True)
    chunks = [
        _finished_chunk(tmp_path, 1, exit_code=0, out=b"a\n"),
        _finished_chunk(tmp_path, 2, exit_code=0, out=b"b\n"),
    ]

    collector.open()
    for chunk in chunks:
        collector.collect(chunk)
    collector.close()

    assert gzip.decompress(target.read_bytes()) == b"a\nb\n"


def test_command_collector_pipes_artifacts_and_measures_process(tmp_path: Path) -> None:
    target = tmp_path / "piped.txt"
    script = "import sys; open(sys.argv[1], 'wb').write(sys.stdin.buffer.read())"
    spec = parse_collector_spec(
        f".out=|{shlex.quote(sys.executable)} -c {shlex.quote(script)} {shlex.quote(str(target))}",
    )
    collector = build_collector(
        spec,
        cleanup=CleanupMode.SUCCESSFUL,
        stdout=io.BytesIO(),
        stderr=io.BytesIO(),
    )
    assert isinstance(collector, CommandCollector)

    collector.open()
    collector.collect(_finished_chunk(tmp_path, 1, exit_code=0, out=b"x\n"))
    collector.collect(_finished_chunk(tmp_path, 2, exit_code=0, out=b"y\n"))
    record = collector.close()

    assert target.read_bytes() == b"x\ny\n"
    assert record.exit_status == 0
    assert record.action == "collector"
    assert not collector.failed


def test_failing_command_collector_is_reported(tmp_path: Path) -> None:
    collector = CommandCollector(
        [sys.executable, "-c", "import sys; sys.stdin.read(); sys.exit(3)"],
        name="bad",
        suffix=".out",
    )

    collector.open()
    collector.collect(_finished_chunk(tmp_path, 1, exit_code=0, out=b"x\n"))
    record = collector.close()

    assert collector.failed
    assert record.exit_status == 3
    assert record.tags["collector"] == "bad"


def test_build_collectors_uses_defaults_and_always_adds_metadata(tmp_path: Path) -> None:
    stdout, stderr = io.BytesIO(), io.BytesIO()

    collectors = build_collectors(
        (),
        metadata_path=tmp_path / "meta.txt",
        cleanup=CleanupMode.SUCCESSFUL,
        stdout=stdout,
        stderr=stderr,
    )

    assert [collector.suffix for collector in collectors] == [".out", ".err", ".meta"]
    assert collectors[0].successful_only is True
    assert collectors[1].successful_only is False
    assert collectors[-1].name == "metadata"

    custom = build_collectors(
        (".csv=out.csv",),
        metadata_path=None,
        cleanup=CleanupMode.SUCCESSFUL,
        stdout=stdout,
        stderr=stderr,
    )
    assert [collector.suffix for collector in custom] == [".csv", ".meta"]
    assert isinstance(custom[0], FileCollector)
