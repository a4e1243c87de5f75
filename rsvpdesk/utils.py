"""Utility helpers for RSVP Desk."""

from __future__ import annotations

import re
import secrets
from collections.abc import Iterable
from datetime import UTC, date, datetime

_object_id_pattern = re.compile(r"^[0-9a-fA-F]{24}$")
_email_pattern = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def utctoday() -> date:
    return utcnow().date()


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Convert aware datetimes to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def new_object_id() -> str:
    """Return a 24 character hexadecimal identifier."""
    return secrets.token_hex(12)


def is_object_id(value: str | None) -> bool:
    return bool(value) and bool(_object_id_pattern.match(value))


def is_valid_email(value: str | None) -> bool:
    return bool(value) and bool(_email_pattern.match(value))


def normalize_invited_emails(raw: str | Iterable[str] | None) -> list[str]:
    """Turn a comma separated string or a list into clean, unique addresses.

    Invalid entries are dropped without complaint; order of first
    appearance is kept.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        candidates = raw.split(",")
    else:
        candidates = list(raw)
    seen: set[str] = set()
    emails: list[str] = []
    for candidate in candidates:
        email = (candidate or "").strip()
        if not is_valid_email(email):
            continue
        key = email.lower()
        if key in seen:
            continue
        seen.add(key)
        emails.append(email)
    return emails


def random_username() -> str:
    """Return a random 8-digit username."""
    return str(10_000_000 + secrets.randbelow(90_000_000))


def schema_error_message(exc) -> str:
    """First error of a pydantic ``ValidationError`` as ``field: message``."""
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid value')}" if location else first["msg"]
