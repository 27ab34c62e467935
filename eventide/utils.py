"""Utility helpers for Eventide."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def is_str(value: Any) -> bool:
    """Return True for non-empty strings."""
    return isinstance(value, str) and len(value) > 0


def parse_instant(raw: str) -> datetime:
    """Parse an ISO-8601 instant into an aware UTC datetime.

    Accepts a trailing ``Z``. Naive values are assumed to be UTC so that
    mixed inputs still order correctly.
    """
    if not is_str(raw):
        raise ValueError("Instant must be a non-empty string")
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def normalize_emails(emails: Iterable[str] | None) -> list[str]:
    """Strip, lower-case and de-duplicate email addresses, keeping order."""
    seen: set[str] = set()
    normalized: list[str] = []
    for raw in emails or ():
        email = (raw or "").strip().lower()
        if not email or email in seen:
            continue
        seen.add(email)
        normalized.append(email)
    return normalized
