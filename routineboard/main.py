from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI

from .config import get_settings
from .db import Base, SessionLocal, engine
from .engine import RecurrenceBatchError, run_schedule_pass
from .logging_setup import purge_old_logs, setup_logging
from .routers import api_recurrence, api_tasks
from .utils.time_utils import now_utc
from .version import APP_VERSION


settings = get_settings()

setup_logging(level=settings.logging.level, log_dir=settings.logging.directory)
logger = logging.getLogger("routineboard")


app = FastAPI(title=settings.app.name, version=APP_VERSION)

app.include_router(api_tasks.router, prefix="/api/tasks", tags=["tasks"])
app.include_router(api_recurrence.router, prefix="/api/recurrence", tags=["recurrence"])


scheduler: BackgroundScheduler | None = None


def _recurrence_job() -> None:
    timeout = int(settings.recurrence.batch_timeout_seconds)
    db = SessionLocal()
    try:
        run_schedule_pass(
            db,
            now=now_utc(),
            timeout_seconds=timeout if timeout > 0 else None,
            trigger="scheduler",
        )
    except RecurrenceBatchError:
        # Already logged and recorded; the next interval retries.
        pass
    except Exception:
        logger.exception("Error while running recurrence pass")
    finally:
        db.close()


def _log_retention_job() -> None:
    try:
        purged = purge_old_logs(
            retention_days=int(settings.logging.retention_days),
            log_dir=settings.logging.directory,
        )
        if purged:
            logger.info("Purged %s old log files", purged)
    except Exception:
        logger.exception("Error while purging old log files")


def _configure_jobs(sched: BackgroundScheduler) -> None:
    cfg = settings.recurrence
    if cfg.scheduler_enabled and int(cfg.interval_minutes) > 0:
        sched.add_job(
            _recurrence_job,
            "interval",
            minutes=int(cfg.interval_minutes),
            id="recurrence_pass",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Recurrence pass scheduled every %s minute(s)", cfg.interval_minutes)
    else:
        logger.info("In-process recurrence scheduling disabled")

    if int(settings.logging.retention_days) > 0:
        sched.add_job(
            _log_retention_job,
            "cron",
            hour=0,
            minute=15,
            id="log_retention",
            replace_existing=True,
            timezone=settings.app.timezone,
        )


@app.on_event("startup")
def on_startup() -> None:
    global scheduler

    # Ensure DB tables exist.
    Base.metadata.create_all(bind=engine)

    scheduler = BackgroundScheduler(timezone="UTC")
    try:
        _configure_jobs(scheduler)
    except Exception:
        logger.exception("Failed to configure scheduled jobs")

    app.state.scheduler = scheduler
    scheduler.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None


@app.get("/healthz", include_in_schema=False)
def healthz():
    return {"status": "ok", "version": APP_VERSION}
