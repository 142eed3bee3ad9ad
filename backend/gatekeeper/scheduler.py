"""Background scheduler for periodic gate maintenance."""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from gatekeeper.config import settings
from gatekeeper.services.admission_service import AdmissionStateMachine
from gatekeeper.services.load_probe import probe_downstream_load

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def sweep_job(gate: AdmissionStateMachine) -> None:
    """Expire overdue challenges and reclaim finished sessions."""
    try:
        gate.sweep()
    except Exception as e:
        logger.error(f"Session sweep failed: {e}")


def recalibrate_job(gate: AdmissionStateMachine) -> None:
    """Recompute difficulty from the current load window."""
    try:
        gate.difficulty.recalibrate()
    except Exception as e:
        logger.error(f"Difficulty recalibration failed: {e}")


def ledger_cleanup_job(gate: AdmissionStateMachine) -> None:
    """Drop replay ledger entries past their retention."""
    if gate.ledger is None:
        return
    try:
        deleted = gate.ledger.cleanup()
        if deleted:
            logger.info(f"Cleanup: removed {deleted} consumed challenges")
    except Exception as e:
        logger.error(f"Ledger cleanup failed: {e}")


def probe_job(gate: AdmissionStateMachine) -> None:
    probe_downstream_load(gate.difficulty)


def start_scheduler(gate: AdmissionStateMachine) -> None:
    """Start the background scheduler."""
    scheduler.add_job(
        sweep_job,
        trigger=IntervalTrigger(seconds=settings.session_sweep_seconds),
        args=[gate],
        id="sweep_sessions",
        replace_existing=True,
    )
    scheduler.add_job(
        recalibrate_job,
        trigger=IntervalTrigger(seconds=settings.difficulty_recalibrate_seconds),
        args=[gate],
        id="recalibrate_difficulty",
        replace_existing=True,
    )
    scheduler.add_job(
        ledger_cleanup_job,
        trigger=IntervalTrigger(minutes=settings.ledger_cleanup_minutes),
        args=[gate],
        id="cleanup_consumed_challenges",
        replace_existing=True,
    )
    if settings.downstream_load_url:
        scheduler.add_job(
            probe_job,
            trigger=IntervalTrigger(seconds=settings.downstream_probe_seconds),
            args=[gate],
            id="probe_downstream_load",
            replace_existing=True,
        )
    scheduler.start()
    logger.info(
        f"Scheduler started - sweep every {settings.session_sweep_seconds}s, "
        f"recalibrate every {settings.difficulty_recalibrate_seconds}s"
    )


def shutdown_scheduler() -> None:
    """Shutdown the scheduler gracefully."""
    scheduler.shutdown()
    logger.info("Scheduler stopped")
