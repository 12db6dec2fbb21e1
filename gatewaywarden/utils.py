"""Shared text helpers for bounded, single-line log output."""

from __future__ import annotations

import json
import unicodedata
from typing import Any


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Serialize arbitrary values into bounded JSON-like text for logging.

    The helper never raises and truncates long payloads to keep log lines readable.
    """
    try:
        raw = json.dumps(payload, ensure_ascii=False, default=str)
    except Exception:
        raw = repr(payload)
    if len(raw) > max_len:
        return raw[:max_len] + "...<truncated>"
    return raw


def normalize_log_text(text: str | None, max_len: int = 4000) -> str:
    """Fold captured command output into one visible log line."""
    if not text:
        return ""
    sanitized = unicodedata.normalize("NFC", text.replace("\0", "\\0").replace("\ufeff", " "))
    sanitized = sanitized.replace("\r", "\\r").replace("\n", "\\n")
    if len(sanitized) > max_len:
        return sanitized[:max_len] + "...<truncated>"
    return sanitized
