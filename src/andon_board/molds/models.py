"""Mold-cleaning configuration and due/overdue classification."""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, Field

from andon_board.errors import ValidationError
from andon_board.timeline.telemetry import DEFAULT_SIZES, MoldRow

MAX_THRESHOLD_CYCLES = 1_000_000


class MoldStatus(str, Enum):
    OK = "OK"
    DUE_SOON = "DUE_SOON"
    OVERDUE = "OVERDUE"


_SEVERITY = {MoldStatus.OVERDUE: 2, MoldStatus.DUE_SOON: 1, MoldStatus.OK: 0}


class MoldConfig(BaseModel):
    """Cleaning thresholds; serialized with the camelCase keys dashboards use."""

    model_config = {"populate_by_name": True}

    mode: str = "global"
    clean_threshold_cycles: int | float = Field(default=250, alias="cleanThresholdCycles")
    due_soon_ratio: float = Field(default=0.85, alias="dueSoonRatio")
    per_size_thresholds: dict[str, int | float] = Field(
        default_factory=lambda: {size: 250 for size in DEFAULT_SIZES},
        alias="perSizeThresholds",
        description="Stored for dashboards; classification uses the global threshold.",
    )

    @property
    def due_soon_at(self) -> int:
        return _round_half_up(self.clean_threshold_cycles * self.due_soon_ratio)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def updated(self, body: Mapping[str, Any]) -> "MoldConfig":
        """Apply a config update; ``dueSoonRatio`` keeps its value when omitted."""
        threshold = _finite(body.get("cleanThresholdCycles"))
        if threshold is None or not 1 <= threshold <= MAX_THRESHOLD_CYCLES:
            raise ValidationError("Invalid cleanThresholdCycles")
        raw_ratio = body.get("dueSoonRatio")
        ratio = _finite(self.due_soon_ratio if raw_ratio is None else raw_ratio)
        if ratio is None or not 0 < ratio < 1:
            raise ValidationError("Invalid dueSoonRatio (0-1)")
        return self.model_copy(
            update={
                "mode": "global",
                "clean_threshold_cycles": _plain(threshold),
                "due_soon_ratio": ratio,
            }
        )


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _finite(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _plain(number: float) -> int | float:
    return int(number) if number.is_integer() else number


def _count(value: Any) -> int | float:
    number = _finite(value)
    return 0 if number is None else _plain(number)


def classify(cycles: float, config: MoldConfig) -> MoldStatus:
    if cycles >= config.clean_threshold_cycles:
        return MoldStatus.OVERDUE
    if cycles >= config.due_soon_at:
        return MoldStatus.DUE_SOON
    return MoldStatus.OK


def compute_mold_snapshot(
    rows: Iterable[MoldRow], config: MoldConfig, now: int
) -> dict[str, Any]:
    """Classify every mold, worst first: severity, then cycles over threshold, then cycles."""
    threshold = config.clean_threshold_cycles
    molds: list[dict[str, Any]] = []
    for row in rows:
        number = _finite(row.mold_number)
        if number is None or number <= 0:
            continue
        size = _finite(row.mold_size)
        cycles = _count(row.cycles_since_cleaning)
        molds.append(
            {
                "moldNumber": _plain(number),
                "moldSize": None if size is None else _plain(size),
                "cyclesSince": cycles,
                "ttdCycles": _count(row.ttd_cycles),
                "lastExtractTs": row.last_extract_ms,
                "threshold": threshold,
                "overBy": max(0, cycles - threshold),
                "status": classify(cycles, config).value,
            }
        )
    molds.sort(
        key=lambda m: (-_SEVERITY[MoldStatus(m["status"])], -m["overBy"], -m["cyclesSince"])
    )

    counts = {"total": len(molds), "overdue": 0, "dueSoon": 0, "ok": 0}
    for mold in molds:
        if mold["status"] == MoldStatus.OVERDUE.value:
            counts["overdue"] += 1
        elif mold["status"] == MoldStatus.DUE_SOON.value:
            counts["dueSoon"] += 1
        else:
            counts["ok"] += 1
    return {
        "now": now,
        "updatedAt": now,
        "config": config.to_dict(),
        "counts": counts,
        "molds": molds,
        "worst": molds[0] if molds else None,
    }
