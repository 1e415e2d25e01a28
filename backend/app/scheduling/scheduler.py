"""
Scheduler — APScheduler jobs for research session housekeeping.

A crashed job must never crash the scheduler or halt other jobs; each job
handles its own errors.

Schedule:
  Stale-phase sweep:  every STALE_SWEEP_INTERVAL_MINUTES (default 5)
                      force-fails phases stuck in processing longer than
                      STALE_PHASE_MINUTES (default 20). Catches work lost to
                      a restart, where no continuation will ever arrive.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


# ── Jobs ────────────────────────────────────────────────────────────────────

async def _sweep_stale_phases(orchestrator) -> None:
    try:
        expired = await orchestrator.expire_stale_phases()
        if expired:
            logger.info(f"Scheduler: stale-phase sweep expired {expired} phase(s).")
        else:
            logger.debug("Scheduler: stale-phase sweep found nothing.")
    except Exception as e:
        logger.error(f"Scheduler: stale-phase sweep failed: {e}", exc_info=True)
        from app.notifications.notifier import get_notifier
        await get_notifier().system_error(f"Stale-phase sweep failed: {e}")


# ── Lifecycle ───────────────────────────────────────────────────────────────

def start_scheduler(orchestrator, interval_minutes: Optional[int] = None) -> AsyncIOScheduler:
    """
    Initialize and start the AsyncIOScheduler.
    Called from FastAPI lifespan startup.
    """
    global _scheduler

    if interval_minutes is None:
        from app.config import get_settings
        interval_minutes = get_settings().stale_sweep_interval_minutes

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        _sweep_stale_phases,
        IntervalTrigger(minutes=interval_minutes),
        args=[orchestrator],
        id="stale_phase_sweep",
        name="Stale Phase Sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    _scheduler.start()
    job_names = [j.name for j in _scheduler.get_jobs()]
    logger.info(f"Scheduler started — {len(job_names)} jobs: {', '.join(job_names)}")
    return _scheduler


def shutdown_scheduler() -> None:
    """Stop the scheduler gracefully. Called from FastAPI lifespan shutdown."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped.")
    _scheduler = None
