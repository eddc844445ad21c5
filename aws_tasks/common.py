"""Common helpers for the toolkit tasks (shared across AWS services).

- _logger: consistent logger selection with config fallback.
- _echo / paint: report output through the injected sink, optionally coloured.
- _to_utc_iso / epoch_seconds / format_local_time: time conversions.
- tags_to_dict: AWS tag lists as a plain dict.
- iter_chunks: size-n slices for batched Describe calls.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from aws_tasks import config

BOLD = "\033[1m"
GREEN = "\033[32m"
RED = "\033[31m"
YELLOW = "\033[33m"
RESET = "\033[0m"


def _logger(fallback: Optional[logging.Logger]) -> logging.Logger:
    """Return the given logger or a sensible default."""
    return fallback or config.LOGGER or logging.getLogger(__name__)


def _echo(line: str = "") -> None:
    config.ECHO(line)


def paint(text: str, *codes: str) -> str:
    """Wrap text in ANSI codes when colour output is enabled."""
    if not config.COLOUR or not codes:
        return text
    return "".join(codes) + text + RESET


def _to_utc_iso(dt_obj: Optional[datetime]) -> Optional[str]:
    """Return datetime as UTC ISO8601 (no microseconds), or None if not a datetime."""
    if not isinstance(dt_obj, datetime):
        return None
    if dt_obj.tzinfo is None:
        dt_obj = dt_obj.replace(tzinfo=timezone.utc)
    else:
        dt_obj = dt_obj.astimezone(timezone.utc)
    return dt_obj.replace(microsecond=0).isoformat()


def epoch_seconds(value: Union[datetime, int, float, str, None]) -> int:
    """Integer seconds since the epoch from a boto datetime, number or numeric string."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    if value is None or value == "":
        raise ValueError("missing timestamp")
    return int(float(value))


def format_local_time(epoch: int) -> str:
    """Locale date/time for an epoch (the same thing ``printf '%(%c)T'`` prints)."""
    return datetime.fromtimestamp(epoch).strftime("%c")


def tags_to_dict(pairs: Optional[List[Dict[str, str]]]) -> Dict[str, str]:
    """Convert AWS [{'Key','Value'}] into a plain dict; empty on errors."""
    out: Dict[str, str] = {}
    for t in pairs or []:
        k, v = t.get("Key"), t.get("Value")
        if k:
            out[str(k)] = "" if v is None else str(v)
    return out


def iter_chunks(items: List[Any], n: int):
    """Yield size-n chunks from items; never yields empty or zero-sized chunks."""
    size = max(1, n)
    for i in range(0, len(items), size):
        yield items[i : i + size]
