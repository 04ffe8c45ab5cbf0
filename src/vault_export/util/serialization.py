from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

REDACTED_VALUE = "<redacted>"
SENSITIVE_KEY_SUBSTRINGS = (
    "password",
    "passphrase",
    "secret",
    "token",
    "authorization",
    "private_key",
)


def _is_sensitive_key(key: Any) -> bool:
    if not isinstance(key, str):
        return False
    lowered = key.lower()
    return any(token in lowered for token in SENSITIVE_KEY_SUBSTRINGS)


def sanitize_for_json(value: Any) -> Any:
    """
    Convert common non-JSON types to serializable forms and redact sensitive fields.
    """
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if _is_sensitive_key(k):
                out[k] = REDACTED_VALUE
            else:
                out[k] = sanitize_for_json(v)
        return out
    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_json(v) for v in value]
    if hasattr(value, "__fspath__"):
        return str(value)
    return value


def redact_params(params: Optional[Mapping[str, Any]]) -> dict:
    """
    Query parameters as a log-safe dict. The vault search filter can carry
    account names, so values are kept but sensitive keys are masked.
    """
    if not params:
        return {}
    return sanitize_for_json(dict(params))


def truncate_text(text: Optional[str], max_len: int = 300) -> str:
    if not text:
        return ""
    cleaned = " ".join(str(text).split())
    if len(cleaned) <= max_len:
        return cleaned
    return cleaned[: max_len - 3].rstrip() + "..."
