"""Secret masking for provider request logs."""

from __future__ import annotations

import re
from collections.abc import Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

SENSITIVE_KEYS = re.compile(
    r"token|secret|password|apikey|api_key|authorization|cookie",
    re.IGNORECASE,
)
MASK = "****"


def _mask_value(value: str) -> str:
    if len(value) > 8:
        return f"{value[:4]}{MASK}{value[-4:]}"
    return MASK


def mask_sensitive(values: Mapping[str, object]) -> dict[str, object]:
    """Return a copy with string values of sensitive keys masked."""
    masked: dict[str, object] = {}
    for key, value in values.items():
        if SENSITIVE_KEYS.search(key) and isinstance(value, str):
            masked[key] = _mask_value(value)
        else:
            masked[key] = value
    return masked


def mask_url(url: str) -> str:
    """Mask query parameters whose names look sensitive."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.query:
        return url

    query: list[tuple[str, str]] = []
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if SENSITIVE_KEYS.search(key):
            value = f"{value[:4]}{MASK}" if len(value) > 8 else MASK
        query.append((key, value))
    return urlunsplit(parts._replace(query=urlencode(query, safe="*")))
