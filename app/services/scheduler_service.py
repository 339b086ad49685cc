"""
Scheduler Service.

Lightweight job registry and runner. Jobs here only improve timeliness
(escalating overdue approvals before anyone reads them, precomputing the
daily risk analytics row); correctness never depends on them running.

Architecture:
    - register_job: decorator adding a job function to the registry
    - ScheduledJob rows persist the enable flag, cron hint and run history
    - run_job executes inside an app context and records the outcome
    - jobs can be triggered manually through the jobs API
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from typing import Callable

from flask import Flask, has_app_context

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_job_schedules: dict[str, str] = {}


def register_job(name: str, cron: str | None = None):
    """Decorator to register a job function.

    ``cron`` is the schedule the external scheduler should use; it is
    stored on the ScheduledJob row and reported by the jobs API.

    Usage:
        @register_job("approval_escalation_sweep", cron="*/15 * * * *")
        def sweep(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        if cron:
            _job_schedules[name] = cron
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


class SchedulerService:
    """Job persistence and execution within the Flask app context."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        # Importing the module registers its jobs.
        from app.services import scheduled_jobs  # noqa: F401

        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def _context(cls):
        return nullcontext() if has_app_context() else cls._app.app_context()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if not cls._app:
            return []

        created = []
        with cls._context():
            for name, fn in _job_registry.items():
                if ScheduledJob.query.filter_by(job_name=name).first():
                    continue
                job = ScheduledJob(
                    job_name=name,
                    description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                    cron_expression=_job_schedules.get(name),
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            raise NotFoundError("ScheduledJob", job_name)
        if not cls._app:
            raise RuntimeError("Scheduler not initialized")

        with cls._context():
            record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if record is not None and not record.is_enabled:
                logger.info("Job %s is disabled, skipping", job_name, extra={"job_name": job_name})
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": None}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            db.session.rollback()
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name, extra={"job_name": job_name})

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict:
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            raise NotFoundError("ScheduledJob", job_name)
        job_record.is_enabled = enabled
        db.session.commit()
        return job_record.to_dict()

