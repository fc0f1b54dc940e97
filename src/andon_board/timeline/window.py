"""Query windows and bucket sizing for timeline views."""

from __future__ import annotations

from dataclasses import dataclass

from andon_board.errors import ValidationError
from andon_board.utils.time import DAY_MS, HOUR_MS, MINUTE_MS, ms_to_iso, parse_instant_ms

DEFAULT_MAX_RANGE_DAYS = 31


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start_ms, end_ms)``."""

    start_ms: int
    end_ms: int

    def __post_init__(self) -> None:
        if self.end_ms <= self.start_ms:
            raise ValidationError("end must be after start")

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    def padded(self, padding_ms: int) -> "TimeWindow":
        return TimeWindow(self.start_ms - padding_ms, self.end_ms + padding_ms)

    def to_dict(self) -> dict[str, str]:
        return {"start": ms_to_iso(self.start_ms), "end": ms_to_iso(self.end_ms)}


def parse_range(
    start: str | None,
    end: str | None,
    *,
    max_days: int = DEFAULT_MAX_RANGE_DAYS,
) -> TimeWindow:
    """Parse ``start``/``end`` (ISO-8601 or epoch milliseconds) into a window."""
    bounds: list[int] = []
    for label, raw in (("start", start), ("end", end)):
        text = (raw or "").strip()
        if not text:
            raise ValidationError(f"Invalid {label}")
        try:
            bounds.append(parse_instant_ms(text))
        except ValueError as exc:
            raise ValidationError(f"Invalid {label}") from exc
    window = TimeWindow(bounds[0], bounds[1])
    if window.duration_ms > max_days * DAY_MS:
        raise ValidationError(f"Range too large (max {max_days} days)")
    return window


def bucket_minutes_for(range_ms: int) -> int:
    hours = range_ms / HOUR_MS
    if hours <= 24:
        return 5
    if hours <= 72:
        return 15
    if hours <= 168:
        return 30
    if hours <= 336:
        return 60
    return 120


def floor_to_bucket(ts_ms: int, bucket_minutes: int) -> int:
    bucket_ms = bucket_minutes * MINUTE_MS
    return ts_ms - (ts_ms % bucket_ms)


def bucket_timeline(window: TimeWindow, bucket_minutes: int) -> list[int]:
    """Bucket start times covering ``window``, both ends floored and included."""
    bucket_ms = bucket_minutes * MINUTE_MS
    first = floor_to_bucket(window.start_ms, bucket_minutes)
    last = floor_to_bucket(window.end_ms, bucket_minutes)
    return list(range(first, last + 1, bucket_ms))
