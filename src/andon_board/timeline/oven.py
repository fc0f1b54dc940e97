"""Plug-performance series and KPIs derived from oven telemetry rows."""

from __future__ import annotations

import math
from typing import Any, Iterable

from andon_board.timeline.telemetry import DEFAULT_SIZES, CureKpis, CureRow, FillRow
from andon_board.timeline.window import floor_to_bucket

# Cycle time lost to each mold that closes without a plug.
EMPTY_CYCLE_SECONDS = 15


def _size_key(size: str) -> tuple[float, str]:
    try:
        return float(size), size
    except ValueError:
        return math.inf, size


def plug_sizes(rows: Iterable[FillRow]) -> list[str]:
    """Sizes seen in ``rows`` in numeric order, or the default sizes when none were."""
    seen = {row.size for row in rows}
    return sorted(seen or DEFAULT_SIZES, key=_size_key)


def efficiency_pct(filled: int, total: int) -> float | None:
    """Filled share of all cycles as a percentage with one decimal."""
    if total <= 0:
        return None
    return math.floor(filled / total * 1000 + 0.5) / 10


def build_plug_performance(
    buckets: list[int],
    bucket_minutes: int,
    fill_rows: list[FillRow],
    cure_rows: list[CureRow],
    cure_kpis: CureKpis,
) -> dict[str, Any]:
    sizes = plug_sizes(fill_rows)

    filled_by_key: dict[tuple[int, str], int] = {}
    filled_total = 0
    empty_total = 0
    for row in fill_rows:
        count = max(0, int(row.count or 0))
        if row.filled:
            filled_total += count
            key = (floor_to_bucket(row.bucket_ms, bucket_minutes), row.size)
            filled_by_key[key] = filled_by_key.get(key, 0) + count
        else:
            empty_total += count
    series = {size: [filled_by_key.get((b, size), 0) for b in buckets] for size in sizes}

    cure_by_key: dict[tuple[int, str], float] = {}
    for row in cure_rows:
        if row.avg_minutes is None:
            continue
        value = float(row.avg_minutes)
        if not math.isfinite(value):
            continue
        cure_by_key[(floor_to_bucket(row.bucket_ms, bucket_minutes), row.size)] = value
    cure_series = {size: [cure_by_key.get((b, size)) for b in buckets] for size in sizes}

    total_cycles = filled_total + empty_total
    return {
        "buckets": list(buckets),
        "sizes": sizes,
        "series": series,
        "kpis": {
            "filledTotal": filled_total,
            "emptyTotal": empty_total,
            "totalCycles": total_cycles,
            "efficiencyPct": efficiency_pct(filled_total, total_cycles),
            "lostSeconds": empty_total * EMPTY_CYCLE_SECONDS,
            "lastCureMinutes": cure_kpis.last_cure_minutes,
            "avgCureMinutes": cure_kpis.avg_cure_minutes,
        },
        "cure": {"buckets": list(buckets), "sizes": sizes, "series": cure_series},
    }
