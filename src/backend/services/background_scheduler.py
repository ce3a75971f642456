"""
Background Scheduler Service

Manages scheduled background tasks using APScheduler:
- Session sweep (honeypot sessions, challenge tokens, expired cache entries)
- Tor exit list refresh

This runs in-process with the FastAPI application. The scheduler is owned
by the application state, not by this module.
"""

from datetime import timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import settings
from services.fraud_detection import ScreeningComponents

logger = structlog.get_logger(__name__)


async def session_sweep_job(components: ScreeningComponents) -> dict[str, int]:
    """
    Background job to drop abandoned session state.

    Honeypot sessions and challenges are normally removed when they are
    validated; this catches the ones that never were.
    """
    try:
        honeypots = await components.honeypots.clean_expired_sessions()
        challenges = await components.challenges.clean_expired()
        other = await components.cache.sweep()
    except Exception as e:
        logger.error("session_sweep_failed", error=str(e), exc_info=True)
        return {}

    result = {"honeypot_sessions": honeypots, "challenges": challenges, "cache_entries": other}
    logger.info("session_sweep_completed", **result)
    return result


async def tor_refresh_job(components: ScreeningComponents) -> int:
    """Background job to reload the Tor exit node list."""
    try:
        return await components.tor_exit_nodes.refresh()
    except Exception as e:
        logger.error("tor_refresh_failed", error=str(e), exc_info=True)
        return len(components.tor_exit_nodes)


def create_scheduler(components: ScreeningComponents) -> AsyncIOScheduler:
    """Build a scheduler with all jobs configured but not started."""
    scheduler = AsyncIOScheduler(timezone=timezone.utc)

    # Job 1: Session sweep
    scheduler.add_job(
        session_sweep_job,
        trigger=IntervalTrigger(minutes=settings.SESSION_SWEEP_INTERVAL_MINUTES),
        args=[components],
        id="session_sweep",
        name="Session Sweep",
        replace_existing=True,
        max_instances=1,
    )

    # Job 2: Tor exit list refresh
    scheduler.add_job(
        tor_refresh_job,
        trigger=IntervalTrigger(minutes=settings.TOR_LIST_REFRESH_MINUTES),
        args=[components],
        id="tor_exit_refresh",
        name="Tor Exit List Refresh",
        replace_existing=True,
        max_instances=1,
    )
    return scheduler


async def start_scheduler(components: ScreeningComponents) -> AsyncIOScheduler:
    """Start the background scheduler with all jobs."""
    scheduler = create_scheduler(components)
    scheduler.start()
    logger.info(
        "background_scheduler_started",
        sweep_minutes=settings.SESSION_SWEEP_INTERVAL_MINUTES,
        tor_refresh_minutes=settings.TOR_LIST_REFRESH_MINUTES,
    )

    # Load the exit list now rather than waiting for the first interval
    await tor_refresh_job(components)
    return scheduler


async def stop_scheduler(scheduler: AsyncIOScheduler | None) -> None:
    """Stop the background scheduler gracefully."""
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("background_scheduler_stopped")
