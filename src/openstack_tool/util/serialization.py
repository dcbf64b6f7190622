from __future__ import annotations

import json
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any

REDACTED_VALUE = "<redacted>"
SENSITIVE_KEY_SUBSTRINGS = (
    "password",
    "passphrase",
    "private_key",
    "secret",
    "token",
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
    if isinstance(value, Enum):
        return value.value
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
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        try:
            return sanitize_for_json(to_dict())
        except Exception:
            return str(value)
    if is_dataclass(value) and not isinstance(value, type):
        return sanitize_for_json(asdict(value))
    return value


def dumps_document(value: Any) -> str:
    return json.dumps(sanitize_for_json(value), indent=2, ensure_ascii=False)
