"""Read-only oven and mold telemetry rows, usually backed by a SQL reporting view.

Sources return sparse rows; bucketing, zero-filling and every derived KPI
happen in :mod:`andon_board.timeline.oven` and :mod:`andon_board.molds`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from andon_board.timeline.window import TimeWindow

DEFAULT_SIZES = ("1", "2", "3", "4")


@dataclass(frozen=True)
class FillRow:
    """Mold closes in one bucket for one plug size, split by filled/empty."""

    bucket_ms: int
    size: str
    filled: bool
    count: int


@dataclass(frozen=True)
class CureRow:
    bucket_ms: int
    size: str
    avg_minutes: float | None


@dataclass(frozen=True)
class CureKpis:
    last_cure_minutes: float | None = None
    avg_cure_minutes: float | None = None


@dataclass(frozen=True)
class MoldRow:
    """Latest reading for one mold."""

    mold_number: float | None
    mold_size: float | None = None
    cycles_since_cleaning: float | None = None
    ttd_cycles: float | None = None
    last_extract_ms: int | None = None


class TelemetrySource(Protocol):
    async def fill_stats(self, window: TimeWindow, bucket_minutes: int) -> list[FillRow]: ...

    async def cure_series(self, window: TimeWindow, bucket_minutes: int) -> list[CureRow]: ...

    async def cure_kpis(self, window: TimeWindow) -> CureKpis: ...

    async def latest_molds(self) -> list[MoldRow]: ...


class NullTelemetrySource:
    """Used when no telemetry database is configured."""

    async def fill_stats(self, window: TimeWindow, bucket_minutes: int) -> list[FillRow]:
        return []

    async def cure_series(self, window: TimeWindow, bucket_minutes: int) -> list[CureRow]:
        return []

    async def cure_kpis(self, window: TimeWindow) -> CureKpis:
        return CureKpis()

    async def latest_molds(self) -> list[MoldRow]:
        return []
