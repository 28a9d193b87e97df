"""
Utility functions for the search forwarder.

Includes id/time helpers and index-rotation naming.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_id() -> str:
    """Generate an opaque unique id (hex UUID4)."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def rotated_index_name(index_name: str, period, now: Optional[datetime] = None) -> str:
    """
    Resolve the concrete index name for a rotation period.

    Args:
        index_name: Base index name
        period: IndexRotationPeriod (or its string value)
        now: Point in time to resolve against (default: current UTC time)

    Returns:
        ``index_name`` unchanged for NoRotation, otherwise the base name with a
        UTC time suffix: ``-YYYY-MM-DD-HH`` (hour), ``-YYYY-MM-DD`` (day),
        ``-YYYY-wWW`` (ISO week) or ``-YYYY-MM`` (month).
    """
    from .config import IndexRotationPeriod

    period = IndexRotationPeriod(period)
    if period is IndexRotationPeriod.NO_ROTATION:
        return index_name

    now = now or utc_now()
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    if period is IndexRotationPeriod.ONE_HOUR:
        suffix = now.strftime("%Y-%m-%d-%H")
    elif period is IndexRotationPeriod.ONE_DAY:
        suffix = now.strftime("%Y-%m-%d")
    elif period is IndexRotationPeriod.ONE_WEEK:
        iso_year, iso_week, _ = now.isocalendar()
        suffix = f"{iso_year}-w{iso_week:02d}"
    else:
        suffix = now.strftime("%Y-%m")
    return f"{index_name}-{suffix}"
