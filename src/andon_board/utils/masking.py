"""Masking helpers for secrets that end up in logs or debug endpoints."""

from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

# Query parameter names (case-insensitive) whose values are never logged.
SENSITIVE_QUERY_KEYS: frozenset[str] = frozenset(
    {
        "appkey",
        "accesskey",
        "secretkey",
        "sig",
        "signature",
        "token",
        "code",
    }
)


def mask_secret(value: str | None, *, head: int = 16, tail: int = 8) -> str | None:
    """Keep the first ``head`` and last ``tail`` characters of a secret.

    Webhook URLs embed their credential in the path, so the debug endpoint
    shows just enough of each end to tell two URLs apart.
    """
    if not value:
        return None
    length = len(value)
    return f"{value[: min(head, length)]}...{value[max(0, length - tail):]}"


def redact_query_params(url: str, *, mask: str = "REDACTED") -> str:
    parts = urlsplit(url)
    if not parts.query:
        return url
    pairs = [
        (key, mask if key.lower() in SENSITIVE_QUERY_KEYS else value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(pairs)))
