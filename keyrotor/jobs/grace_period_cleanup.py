"""Grace Period Cleanup Jobs.

``handle_cleanup_task`` is the entry point an external deferred-execution
facility calls with a ``CleanupTask`` payload once a grace period expires.
``grace_period_reaper`` delivers due tasks held by the in-process scheduler
and sweeps for expired grace periods whose task never arrived.
"""
import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy.orm import Session, sessionmaker

from keyrotor.adapters.memory_store.scheduler import MemoryScheduler
from keyrotor.dependencies import build_rotation_engine, get_session_factory
from keyrotor.domain.cleanup import GracePeriodCleanup, GracePeriodReaper
from keyrotor.domain.interfaces import CleanupTask, Scheduler
from keyrotor.domain.rotation import RotationEngine
from keyrotor.settings import get_settings

logger = logging.getLogger(__name__)

EngineFactory = Callable[[Session], RotationEngine]


def _default_engine(db: Session) -> RotationEngine:
    return build_rotation_engine(db, source="queue")


def parse_task(payload: Union[str, bytes, Dict[str, Any], CleanupTask]) -> CleanupTask:
    if isinstance(payload, CleanupTask):
        return payload
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    return CleanupTask.model_validate(payload)


def handle_cleanup_task(
    payload: Union[str, bytes, Dict[str, Any], CleanupTask],
    session: Session,
    engine_factory: Optional[EngineFactory] = None,
) -> bool:
    """Run one deferred cleanup. Safe to deliver more than once."""
    task = parse_task(payload)
    engine = (engine_factory or _default_engine)(session)
    return GracePeriodCleanup(engine).run(task)


def run_due_cleanups(engine: RotationEngine, scheduler: Optional[Scheduler] = None) -> int:
    """Deliver deferred cleanups held by an in-process scheduler once they are due."""
    scheduler = scheduler or engine.scheduler
    if not isinstance(scheduler, MemoryScheduler):
        return 0

    cleanup = GracePeriodCleanup(engine)

    def run(task: CleanupTask) -> None:
        try:
            cleanup.run(task)
        except Exception as e:
            # Left for the sweep; the grace period is still recorded on the row.
            logger.error(f"Deferred cleanup for {task.key} failed: {e}", exc_info=True)

    return scheduler.run_due(engine.clock(), run)


def run_reaper_once(
    session: Session,
    engine_factory: Optional[EngineFactory] = None,
    scheduler: Optional[Scheduler] = None,
) -> int:
    """One reaper pass: due deferred cleanups first, then the expiry sweep."""
    engine = (engine_factory or _default_engine)(session)
    delivered = run_due_cleanups(engine, scheduler)
    if delivered:
        logger.info(f"Delivered {delivered} deferred cleanup task(s)")
    return GracePeriodReaper(engine).sweep()


async def grace_period_reaper(
    shutdown_event: asyncio.Event,
    session_factory: Optional[sessionmaker] = None,
    engine_factory: Optional[EngineFactory] = None,
    interval_seconds: Optional[int] = None,
    scheduler: Optional[Scheduler] = None,
):
    """
    Background worker that delivers due cleanup tasks and clears expired grace periods.
    Runs every ``reaper_interval_seconds``, respecting the shutdown event.
    """
    interval = interval_seconds or get_settings().reaper_interval_seconds
    logger.info(f"Starting grace period reaper (interval={interval}s)")

    while not shutdown_event.is_set():
        try:
            factory = session_factory or get_session_factory()
            db = factory()
            try:
                cleared = await asyncio.to_thread(run_reaper_once, db, engine_factory, scheduler)
            finally:
                db.close()

            if cleared:
                logger.info(f"Reaper pass cleared {cleared} grace period(s)")
            else:
                logger.debug("Reaper pass found no expired grace periods")

        except Exception as e:
            logger.error(f"Error in grace period reaper: {e}", exc_info=True)

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue

    logger.info("Grace period reaper stopped")
