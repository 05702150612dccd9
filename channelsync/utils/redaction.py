"""
Payload redaction for audit records and logs.

Keys and string values are matched case-insensitively against a list of
substrings; matches are replaced with REDACTED_MARKER. Dicts and lists are
walked recursively, other primitives pass through untouched.
"""

from typing import Any, Iterable, List, Optional

from ..config import settings

REDACTED_MARKER = "[REDACTED]"


def _normalize_keys(keys: Optional[Iterable[str]]) -> List[str]:
    if keys is None:
        keys = settings.redact_key_list
    return [k.lower() for k in keys if k]


def _matches(text: str, keys: List[str]) -> bool:
    lowered = text.lower()
    return any(k in lowered for k in keys)


def redact(payload: Any, keys: Optional[Iterable[str]] = None) -> Any:
    """Return a redacted copy of payload. The input is never mutated."""
    needles = _normalize_keys(keys)
    return _redact(payload, needles)


def _redact(value: Any, keys: List[str]) -> Any:
    if isinstance(value, dict):
        result = {}
        for k, v in value.items():
            if isinstance(k, str) and _matches(k, keys):
                result[k] = REDACTED_MARKER
            else:
                result[k] = _redact(v, keys)
        return result

    if isinstance(value, (list, tuple)):
        return [_redact(item, keys) for item in value]

    if isinstance(value, str):
        # The marker itself must never match, otherwise a second pass would
        # not be a no-op for keys like "redact".
        if value == REDACTED_MARKER:
            return value
        return REDACTED_MARKER if _matches(value, keys) else value

    return value
