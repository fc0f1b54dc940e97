"""Text normalization shared by responder lookups and form inputs."""

from __future__ import annotations

import re

_WHITESPACE = re.compile(r"\s+")


def clean_text(value: object) -> str:
    """Trim and collapse internal whitespace; ``None`` becomes ``""``."""
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip()


def name_key(value: object) -> str:
    """Case-folded lookup key for a human-entered name."""
    return clean_text(value).casefold()

