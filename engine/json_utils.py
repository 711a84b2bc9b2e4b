"""JSON-safe conversion helpers for log payloads and API responses."""

from __future__ import annotations

import json
import logging
import math
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath


def safe_json(value):
    """Return ``value`` with every nested item coerced to a JSON-native type."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Enum):
        return safe_json(value.value)
    if isinstance(value, dict):
        return {str(k): safe_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        return [safe_json(v) for v in items]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, PurePath):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def safe_json_dumps(value, **kwargs) -> str:
    kwargs.setdefault("ensure_ascii", False)
    return json.dumps(safe_json(value), allow_nan=False, **kwargs)


def log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logging.log(level, safe_json_dumps(payload, sort_keys=True))
    except Exception as exc:
        logging.log(level, f"log_event_serialization_failed: {exc} message={message}")
