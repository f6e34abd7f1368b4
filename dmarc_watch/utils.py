"""Utility helpers shared across modules."""

from __future__ import annotations

from base64 import urlsafe_b64encode
from datetime import UTC, datetime
from hashlib import sha256
from typing import Iterable


def parse_rfc3339(value: str) -> datetime:
    """Convert RFC 3339 strings (with trailing Z) into aware UTC datetimes."""
    return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))


def ensure_utc(dt: datetime) -> datetime:
    """Force a datetime into UTC without altering instant."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def chunked(iterable: Iterable, size: int):
    """Yield successive sized chunks from an iterable."""
    chunk = []
    for item in iterable:
        chunk.append(item)
        if len(chunk) == size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def content_digest(*parts: bytes | str) -> str:
    """Short, URL-safe identifier derived from SHA-256 over all parts.

    The hash is truncated to 16 bytes and base64url encoded without padding,
    which keeps identifiers compact enough for URLs and log lines.
    """
    hasher = sha256()
    for part in parts:
        hasher.update(part.encode("utf-8") if isinstance(part, str) else part)
    return urlsafe_b64encode(hasher.digest()[:16]).decode("ascii").rstrip("=")
