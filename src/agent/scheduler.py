"""APScheduler setup for periodic push-watch renewal.

Gmail expires a users.watch registration after seven days; renewing daily
keeps push notifications flowing without tracking the expiry ourselves.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

_DEFAULT_RENEW_HOURS = 24


def _parse_renew_hours(raw: str) -> int:
    """Parse a positive hour count. Falls back to 24 on parse error."""
    try:
        hours = int(raw.strip())
    except (ValueError, AttributeError):
        logger.warning("Invalid GMAIL_WATCH_RENEW_HOURS %r; defaulting to 24", raw)
        return _DEFAULT_RENEW_HOURS
    if hours <= 0:
        logger.warning("GMAIL_WATCH_RENEW_HOURS must be positive; defaulting to 24")
        return _DEFAULT_RENEW_HOURS
    return hours


def create_watch_scheduler(
    renew: Callable[[], Awaitable[Any]],
    hours: int | None = None,
) -> AsyncIOScheduler:
    """Return an AsyncIOScheduler that calls `renew` every `hours` hours.

    The caller is responsible for calling scheduler.start() and scheduler.shutdown().
    """
    if hours is None:
        hours = _parse_renew_hours(os.environ.get("GMAIL_WATCH_RENEW_HOURS", "24"))

    scheduler = AsyncIOScheduler()
    scheduler.add_job(renew, "interval", hours=hours)
    logger.info("Push watch renewal scheduled every %dh", hours)
    return scheduler
