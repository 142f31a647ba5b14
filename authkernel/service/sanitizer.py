from __future__ import annotations

from typing import Any, Iterable, List, Tuple

MAX_DEPTH = 32

_ESCAPES = (
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&#x27;"),
    ("/", "&#x2F;"),
)


def sanitize_string(value: str) -> str:
    """Strip NUL bytes, trim, and HTML-escape markup characters."""
    cleaned = value.replace("\0", "").strip()
    # '&' first so later entities are not double-escaped
    for char, entity in _ESCAPES:
        cleaned = cleaned.replace(char, entity)
    return cleaned


def is_forbidden_key(key: Any) -> bool:
    """Operator-like keys (``$where``, ``a.b``) never reach handlers."""
    return isinstance(key, str) and (key.startswith("$") or "." in key)


def sanitize_payload(value: Any, _depth: int = 0) -> Any:
    """Return a cleaned copy of an arbitrary JSON-like tree.

    Never raises: sub-trees nested deeper than ``MAX_DEPTH`` become ``None``.
    """
    if _depth > MAX_DEPTH:
        return None
    if isinstance(value, str):
        return sanitize_string(value)
    if isinstance(value, dict):
        return {
            key: sanitize_payload(item, _depth + 1)
            for key, item in value.items()
            if not is_forbidden_key(key)
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_payload(item, _depth + 1) for item in value]
    return value


def sanitize_query_pairs(pairs: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    return [
        (key, sanitize_string(value))
        for key, value in pairs
        if not is_forbidden_key(key)
    ]
