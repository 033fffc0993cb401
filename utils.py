"""Shared utility functions for memory-client."""

from __future__ import annotations

import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path


def log(message: str) -> None:
    """Write a diagnostic line to stderr. stdout belongs to the protocol."""
    print(f"[memory-client] {message}", file=sys.stderr)


def truncate(text: str, max_len: int = 50) -> str:
    return text if len(text) <= max_len else text[:max_len] + "..."


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a timestamp as ISO-8601 in UTC.

    A single offset keeps the strings lexicographically sortable.
    """
    return as_utc(value).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def path_id(path: str | Path) -> str:
    """Deterministic point ID for a file: UUID5 of its absolute path."""
    absolute = Path(path).expanduser().resolve().as_posix()
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"file://{absolute}"))


def new_id() -> str:
    return str(uuid.uuid4())
