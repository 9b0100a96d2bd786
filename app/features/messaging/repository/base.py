"""Shared row-mapping helpers for messaging repositories."""

from typing import Any


def as_str(value: Any) -> str | None:
    """UUID columns come back as uuid.UUID; the domain carries strings."""
    return str(value) if value is not None else None
