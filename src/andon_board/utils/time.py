"""Time helpers.

All lifecycle timestamps are integer milliseconds since the Unix epoch.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], int]

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def ms_to_iso(value: int) -> str:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()


def parse_instant_ms(value: str) -> int:
    """Parse an ISO-8601 timestamp or an epoch-milliseconds string.

    Naive ISO values are interpreted as UTC. Raises ``ValueError`` when the
    value cannot be parsed.
    """
    candidate = value.strip()
    if not candidate:
        raise ValueError("empty timestamp")
    if candidate.lstrip("-").isdigit():
        return int(candidate)
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    parsed = datetime.fromisoformat(candidate)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)
