"""Maintenance scheduler process (``flask scheduler run``).

Runs next to the WSGI workers, never inside them. Jobs are persisted in the
application database through APScheduler's SQLAlchemyJobStore and always
stored as the textual reference of :func:`run_job_in_app_context`, so the
store only holds importable names and each run gets its own app context.
"""
from __future__ import annotations

import importlib
import inspect
import logging
import signal
import threading
from logging.handlers import RotatingFileHandler
from types import ModuleType
from typing import Iterator

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask

from . import create_app

logger = logging.getLogger("scheduler")

INTERVAL_UNITS = ("weeks", "days", "hours", "minutes", "seconds")
DISPATCHER_REF = f"{__name__}:run_job_in_app_context"


def setup_logging(path: str = "/tmp/rental-scheduler.log") -> None:
    handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=3)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def _log_job_event(event) -> None:
    if event.code == EVENT_JOB_MISSED:
        logger.warning("Job %s missed its run time %s", event.job_id, event.scheduled_run_time)
    else:
        logger.error("Job %s raised %r", event.job_id, event.exception)


def get_scheduler(app: Flask) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(
        jobstores={"default": SQLAlchemyJobStore(url=app.config.get("SQLALCHEMY_DATABASE_URI"))},
        # a maintenance run that is late or still going is skipped, not stacked
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 300},
        timezone="UTC",
    )
    scheduler.add_listener(_log_job_event, EVENT_JOB_ERROR | EVENT_JOB_MISSED)
    return scheduler


def run_job_in_app_context(module_name: str, func_name: str, *a, **kw):
    """Entry point stored in the job store: run ``module_name.func_name`` in a fresh app context."""
    target = getattr(importlib.import_module(module_name), func_name)
    app = create_app()
    with app.app_context():
        try:
            return target(*a, **kw)
        except Exception:
            logger.exception("Job %s.%s failed", module_name, func_name)
            raise


def discover_jobs(module: ModuleType) -> Iterator[tuple[str, object, dict]]:
    """Yield ``(job_id, function, interval kwargs)`` for each ``@job`` function of ``module``."""
    for name, fn in sorted(vars(module).items()):
        # module level proxies such as current_app cannot be inspected outside an app context
        if not inspect.isfunction(fn):
            continue
        meta = getattr(fn, "job_meta", None)
        if not meta:
            continue
        if meta.get("schedule", "interval") != "interval":
            logger.info("Skipping %s: unsupported schedule %s", name, meta.get("schedule"))
            continue
        interval = {unit: meta[unit] for unit in INTERVAL_UNITS if unit in meta} or {"minutes": 15}
        yield meta.get("id", name), fn, interval


def register_jobs(scheduler: BackgroundScheduler) -> int:
    """Replace whatever the job store holds with the jobs of :mod:`.jobs`; returns their count."""
    from . import jobs as jobs_module

    # stale entries may point to functions that no longer exist
    scheduler.remove_all_jobs()
    count = 0
    for job_id, fn, interval in discover_jobs(jobs_module):
        scheduler.add_job(
            DISPATCHER_REF,
            "interval",
            args=[fn.__module__, fn.__name__],
            id=job_id,
            replace_existing=True,
            **interval,
        )
        count += 1
        logger.info("Registered job %s every %s", job_id, interval)
    if not count:
        logger.warning("No @job functions found in %s", jobs_module.__name__)
    return count


def run() -> None:
    app = create_app()
    setup_logging()
    scheduler = get_scheduler(app)
    # started paused so remove_all_jobs reaches the persistent store
    scheduler.start(paused=True)
    register_jobs(scheduler)
    scheduler.resume()

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    logger.info("Scheduler started with %s jobs", len(scheduler.get_jobs()))
    try:
        while not stop.wait(60):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Shutting down scheduler")
        scheduler.shutdown()
