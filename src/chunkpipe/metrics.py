"""Aggregated run statistics computed from a metadata file."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from chunkpipe.metadata import ACTION_COLLECTOR, ACTION_COMMAND, MetadataRecord


@dataclass(slots=True)
class RunMetricsSnapshot:
    """Aggregated metadata used by the stats command."""

    action_counts: dict[str, int]
    exit_status_counts: dict[str, int]
    attempt_counts: dict[str, int]
    chunks_failed: list[str]
    collectors_failed: list[str]
    wall_seconds_total: float
    user_seconds_total: float
    system_seconds_total: float
    max_rss_kb_peak: int | None
    slowest_chunk: str | None = None
    slowest_wall_seconds: float | None = None
    unknown_usage: int = 0


def build_run_metrics(records: list[MetadataRecord]) -> RunMetricsSnapshot:
    action_counts = Counter(record.action for record in records)
    commands = [record for record in records if record.action == ACTION_COMMAND]
    collectors = [record for record in records if record.action == ACTION_COLLECTOR]

    exit_status_counts = Counter(str(record.exit_status) for record in commands)
    attempt_counts = Counter(record.tags.get("attempt", "?") for record in commands)
    chunks_failed = sorted(
        {
            record.tags.get("sequence") or record.tags.get("input", "?")
            for record in commands
            if record.exit_status != 0
        },
        key=_natural_key,
    )
    collectors_failed = sorted(
        record.tags.get("collector", "?") for record in collectors if record.exit_status != 0
    )

    slowest: MetadataRecord | None = None
    for record in commands:
        if record.wall_seconds is None:
            continue
        if slowest is None or (slowest.wall_seconds or 0.0) < record.wall_seconds:
            slowest = record

    rss_values = [record.max_rss_kb for record in commands if record.max_rss_kb is not None]
    return RunMetricsSnapshot(
        action_counts=dict(sorted(action_counts.items())),
        exit_status_counts=dict(sorted(exit_status_counts.items(), key=lambda item: int(item[0]))),
        attempt_counts=dict(sorted(attempt_counts.items(), key=lambda item: _natural_key(item[0]))),
        chunks_failed=chunks_failed,
        collectors_failed=collectors_failed,
        wall_seconds_total=sum(record.wall_seconds or 0.0 for record in commands),
        user_seconds_total=sum(record.user_seconds or 0.0 for record in commands),
        system_seconds_total=sum(record.system_seconds or 0.0 for record in commands),
        max_rss_kb_peak=max(rss_values) if rss_values else None,
        slowest_chunk=(slowest.tags.get("sequence") if slowest is not None else None),
        slowest_wall_seconds=(slowest.wall_seconds if slowest is not None else None),
        unknown_usage=sum(1 for record in commands if record.user_seconds is None),
    )


def render_stats_lines(*, snapshot: RunMetricsSnapshot) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [
        "Actions: " + (_fmt_key_value(snapshot.action_counts) or "none"),
        "Command exit status: " + (_fmt_key_value(snapshot.exit_status_counts) or "none"),
        "Final attempt number: " + (_fmt_key_value(snapshot.attempt_counts) or "none"),
        (
            "Command time: "
            f"wall={snapshot.wall_seconds_total:.3f}s "
            f"user={snapshot.user_seconds_total:.3f}s "
            f"system={snapshot.system_seconds_total:.3f}s"
        ),
        (
            "Peak memory: "
            + (f"{snapshot.max_rss_kb_peak} KiB" if snapshot.max_rss_kb_peak is not None else "n/a")
        ),
    ]
    if snapshot.slowest_chunk is not None and snapshot.slowest_wall_seconds is not None:
        lines.append(
            f"Slowest chunk: {snapshot.slowest_chunk} ({snapshot.slowest_wall_seconds:.3f}s)",
        )
    if snapshot.unknown_usage:
        lines.append(f"Records without resource usage: {snapshot.unknown_usage}")
    lines.append("Failed chunks: " + (", ".join(snapshot.chunks_failed) or "none"))
    lines.append("Failed collectors: " + (", ".join(snapshot.collectors_failed) or "none"))
    return lines


def _natural_key(value: str) -> tuple[int, int | str]:
    return (0, int(value)) if value.isdigit() else (1, value)


def _fmt_key_value(values: dict[str, int]) -> str:
    return " ".join(f"{key}={value}" for key, value in values.items())
