"""Opaque identifier generation for calls and tickets."""

from __future__ import annotations

from uuid import uuid4

from andon_board.utils.time import now_ms


def make_id(prefix: str = "id", *, ts: int | None = None) -> str:
    stamp = now_ms() if ts is None else ts
    return f"{prefix}_{stamp}_{uuid4().hex[:8]}"
