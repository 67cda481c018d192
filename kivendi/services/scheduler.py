"""
Background task scheduler for periodic jobs.

Uses APScheduler for:
- Boost expiry (once at startup, then every BOOST_EXPIRY_INTERVAL_HOURS)
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from kivendi.core.config import settings
from kivendi.services.boost_expiry import run_boost_expiry

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def expire_boosts_job():
    """Job: deactivate expired boosts. The DB work runs in a thread and is never cancelled mid-transaction."""
    try:
        await asyncio.to_thread(run_boost_expiry)
    except Exception as e:
        logger.exception("Scheduled boost expiry failed: %s", e)


def setup_scheduler():
    """Configure the scheduler."""
    scheduler.add_job(
        expire_boosts_job,
        trigger=IntervalTrigger(hours=settings.boost_expiry_interval_hours),
        id="expire_boosts",
        name="Deactivate expired ad boosts",
        replace_existing=True,
        next_run_time=datetime.now(timezone.utc),
        max_instances=1,
        coalesce=True,
    )
    logger.info("Boost expiry scheduled every %s hours", settings.boost_expiry_interval_hours)


async def start_scheduler():
    """Start the background scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler is disabled in settings")
        return
    setup_scheduler()
    scheduler.start()
    logger.info("Scheduler started")


async def stop_scheduler():
    """Stop the scheduler; a running expiry transaction finishes on its own."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
