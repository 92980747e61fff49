"""Dedicated APScheduler worker process."""
from __future__ import annotations

import logging
import signal
import threading

from apscheduler.schedulers.background import BackgroundScheduler

from app.core.config import settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal
from app.llm.client import get_text_generator
from app.observability.client import init_opik, shutdown_opik
from app.services.job_runner import run_overdue_sweep, run_reflection_for_all_users


logger = logging.getLogger(__name__)


def main() -> None:
    configure_logging(log_level=settings.log_level)
    init_opik()
    logger.info("Scheduler worker starting (enabled=%s)", settings.scheduler_enabled)

    scheduler = BackgroundScheduler(timezone=settings.scheduler_timezone)

    if settings.scheduler_enabled:
        _register_jobs(scheduler)
        scheduler.start()
        if settings.jobs_run_on_startup:
            logger.info("Running jobs once on startup")
            _run_overdue_job()
            _run_reflection_job()
    else:
        logger.warning("Scheduler disabled via config; worker will idle")

    stop_event = threading.Event()

    def shutdown(signum, frame):  # pragma: no cover - signal handler
        logger.info("Scheduler worker shutting down (signal=%s)", signum)
        if scheduler.running:
            scheduler.shutdown(wait=False)
        shutdown_opik()
        stop_event.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        stop_event.wait()
    except KeyboardInterrupt:  # pragma: no cover - manual stop
        shutdown(signal.SIGINT, None)


def _register_jobs(scheduler: BackgroundScheduler) -> None:
    scheduler.add_job(
        _run_overdue_job,
        trigger="interval",
        minutes=settings.overdue_sweep_minutes,
        id="overdue_sweep_job",
        replace_existing=True,
    )
    scheduler.add_job(
        _run_reflection_job,
        trigger="cron",
        hour=settings.reflection_job_hour,
        minute=settings.reflection_job_minute,
        id="reflection_job",
        replace_existing=True,
    )
    logger.info(
        "Registered scheduler jobs (sweep every %s min, reflection at %02d:%02d %s)",
        settings.overdue_sweep_minutes,
        settings.reflection_job_hour,
        settings.reflection_job_minute,
        settings.scheduler_timezone,
    )


def _run_overdue_job() -> None:
    session = SessionLocal()
    try:
        marked = run_overdue_sweep(session)
        logger.info("Overdue sweep complete: tasks_marked=%s", marked)
    except Exception:  # pragma: no cover guard
        logger.exception("Overdue sweep failed")
    finally:
        session.close()


def _run_reflection_job() -> None:
    session = SessionLocal()
    try:
        result = run_reflection_for_all_users(session, get_text_generator())
        logger.info(
            "Reflection job complete: users=%s, reflections=%s, skipped=%s",
            result.users_processed,
            result.reflections_written,
            result.goals_skipped,
        )
    except Exception:  # pragma: no cover guard
        logger.exception("Reflection job failed")
    finally:
        session.close()


if __name__ == "__main__":  # pragma: no cover - manual launch
    main()
