"""Helpers for compact debug logging.

States and raw payloads can grow large; every log line that echoes one goes
through :func:`summarize_for_log` so a single message stays readable.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any


def summarize_for_log(value: Any, *, max_length: int = 512) -> str:
    """Render *value* as a single-line string no longer than *max_length*."""
    if isinstance(value, bytes):
        text = value.decode("utf-8", errors="replace")
    elif isinstance(value, str):
        text = value
    elif isinstance(value, Mapping):
        try:
            text = json.dumps(dict(value), sort_keys=True, default=repr)
        except (TypeError, ValueError):
            text = repr(value)
    else:
        text = repr(value)

    text = text.replace("\n", " ")
    if len(text) > max_length:
        return f"{text[:max_length]}…<truncated {len(text) - max_length} chars>"
    return text
