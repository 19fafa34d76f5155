"""Datetime helpers."""

from __future__ import annotations

import os

import pendulum

DEFAULT_TZ = "America/Santiago"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def now_in_tz() -> pendulum.DateTime:
    tz = pendulum.timezone(timezone_name())
    return pendulum.now(tz)


def db_timestamp() -> str:
    """ISO-8601 timestamp accepted by both PostgreSQL and SQLite columns."""
    return now_in_tz().to_iso8601_string()
