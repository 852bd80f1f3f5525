"""Metadata records for measured actions (chunk commands and collectors).

One record is a block of ``key: value`` lines terminated by a blank line.
Free-form tags use a ``tag.`` prefix. Unknown measurements render as
``unknown`` and parse back to None.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from chunkpipe.execution.runner import CommandRunResult, ResourceUsage

ACTION_COMMAND = "command"
ACTION_COLLECTOR = "collector"

_UNKNOWN = "unknown"
_TAG_PREFIX = "tag."
_USAGE_FIELDS = (
    "user_seconds",
    "system_seconds",
    "max_rss_kb",
    "block_input",
    "block_output",
    "voluntary_context_switches",
    "involuntary_context_switches",
)
_FLOAT_FIELDS = {"wall_seconds", "user_seconds", "system_seconds"}


@dataclass(slots=True)
class MetadataRecord:
    """Timing and resource usage of one measured action."""

    action: str
    exit_status: int
    wall_seconds: float | None = None
    user_seconds: float | None = None
    system_seconds: float | None = None
    max_rss_kb: int | None = None
    block_input: int | None = None
    block_output: int | None = None
    voluntary_context_switches: int | None = None
    involuntary_context_switches: int | None = None
    started_at: str | None = None
    finished_at: str | None = None
    tags: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_run(
        cls,
        *,
        action: str,
        exit_status: int,
        wall_seconds: float | None,
        usage: ResourceUsage | None,
        started_at: datetime | None = None,
        finished_at: datetime | None = None,
        tags: dict[str, str] | None = None,
    ) -> MetadataRecord:
        record = cls(
            action=action,
            exit_status=exit_status,
            wall_seconds=wall_seconds,
            started_at=started_at.isoformat() if started_at is not None else None,
            finished_at=finished_at.isoformat() if finished_at is not None else None,
            tags=dict(tags or {}),
        )
        if usage is not None:
            for name in _USAGE_FIELDS:
                setattr(record, name, getattr(usage, name))
        return record

    @classmethod
    def from_command_result(
        cls,
        result: CommandRunResult,
        *,
        exit_status: int,
        tags: dict[str, str],
    ) -> MetadataRecord:
        return cls.from_run(
            action=ACTION_COMMAND,
            exit_status=exit_status,
            wall_seconds=result.wall_seconds,
            usage=result.usage,
            started_at=result.started_at,
            finished_at=result.finished_at,
            tags=tags,
        )

    def render(self) -> str:
        lines = [
            f"action: {self.action}",
            f"exit_status: {self.exit_status}",
            f"wall_seconds: {_fmt(self.wall_seconds)}",
        ]
        lines.extend(f"{name}: {_fmt(getattr(self, name))}" for name in _USAGE_FIELDS)
        lines.append(f"started_at: {self.started_at or _UNKNOWN}")
        lines.append(f"finished_at: {self.finished_at or _UNKNOWN}")
        lines.extend(f"{_TAG_PREFIX}{key}: {_one_line(value)}" for key, value in self.tags.items())
        return "\n".join(lines) + "\n\n"


def write_record(path: Path, record: MetadataRecord) -> None:
    """Replace the record at ``path``; readers never observe a partial block."""

    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(record.render(), "utf-8")
    tmp_path.replace(path)


def append_records(path: Path, records: Iterable[MetadataRecord]) -> None:
    with path.open("a", encoding="utf-8") as handle:
        for record in records:
            handle.write(record.render())


def parse_records(text: str) -> list[MetadataRecord]:
    """Parse concatenated metadata blocks; malformed lines are rejected."""

    return list(_iter_records(text))


def _iter_records(text: str) -> Iterator[MetadataRecord]:
    block: dict[str, str] = {}
    for line_no, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            if block:
                yield _record_from_block(block)
                block = {}
            continue
        key, separator, value = line.partition(":")
        if not separator:
            raise ValueError(f"Malformed metadata line {line_no}: {raw_line!r}")
        block[key.strip()] = value.strip()
    if block:
        yield _record_from_block(block)


def _record_from_block(block: dict[str, str]) -> MetadataRecord:
    try:
        record = MetadataRecord(
            action=block["action"],
            exit_status=int(block["exit_status"]),
        )
    except KeyError as error:
        raise ValueError(f"Metadata block is missing {error.args[0]!r}") from error
    except ValueError as error:
        raw = block["exit_status"]
        raise ValueError(f"Metadata block has invalid exit_status: {raw!r}") from error

    record.wall_seconds = _parse_number(block.get("wall_seconds"), as_float=True)
    for name in _USAGE_FIELDS:
        setattr(record, name, _parse_number(block.get(name), as_float=name in _FLOAT_FIELDS))
    record.started_at = _parse_text(block.get("started_at"))
    record.finished_at = _parse_text(block.get("finished_at"))
    record.tags = {
        key[len(_TAG_PREFIX) :]: value
        for key, value in block.items()
        if key.startswith(_TAG_PREFIX)
    }
    return record


def _fmt(value: float | int | None) -> str:
    if value is None:
        return _UNKNOWN
    if isinstance(value, float):
        return f"{value:.6f}"
    return str(value)


def _one_line(value: str) -> str:
    return " ".join(str(value).splitlines())


def _parse_number(raw: str | None, *, as_float: bool) -> float | int | None:
    if raw is None or raw == _UNKNOWN:
        return None
    try:
        return float(raw) if as_float else int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid numeric metadata value: {raw!r}") from error


def _parse_text(raw: str | None) -> str | None:
    if raw is None or raw == _UNKNOWN:
        return None
    return raw
