"""
Operational Exception Tracker
Scheduler Service — periodic jobs such as the SLA breach sweep.

A lightweight thread-based scheduler: job functions are registered with a
decorator, run inside a Flask app context, and their last outcome is kept
in memory. Jobs can also be triggered manually (CLI or API) which is how
tests and single-process deployments drive them.

Architecture:
    - register_job(name): decorator adding a function to the registry
    - SchedulerService.run_job(name): run once, capture duration/result/error
    - SchedulerService.start(interval): daemon thread running every job on a fixed interval
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from flask import Flask

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("sla_breach_sweep")
        def sweep(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Lightweight scheduler service.

    Jobs are executed within the Flask app context. Last-run outcomes are
    kept per job name for status reporting.
    """

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None
    _last_runs: dict[str, dict] = {}

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Bind the scheduler to an app and start the sweep thread if configured."""
        # Registers the jobs via their decorators
        from exception_tracker.services import scheduled_jobs  # noqa: F401

        cls._app = app
        cls._last_runs = {}
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

        interval = int(app.config.get("SLA_SWEEP_INTERVAL_SECONDS", 0) or 0)
        if interval > 0 and not app.config.get("TESTING"):
            cls.start(interval)

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with job_name, status, duration_ms, result and error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc)

        duration_ms = int((time.monotonic() - start) * 1000)
        outcome = {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
            "ran_at": datetime.now(timezone.utc).isoformat(),
        }
        cls._last_runs[job_name] = outcome
        return outcome

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their last run, if any."""
        return [
            {"job_name": name, "last_run": cls._last_runs.get(name)}
            for name in _job_registry
        ]

    @classmethod
    def start(cls, interval_seconds: int) -> None:
        """Run every registered job each interval on a daemon thread."""
        if cls._thread and cls._thread.is_alive():
            return
        cls._stop_event = threading.Event()

        def _loop(stop: threading.Event):
            while not stop.wait(interval_seconds):
                for name in list(_job_registry):
                    cls.run_job(name)

        cls._thread = threading.Thread(
            target=_loop, args=(cls._stop_event,),
            name="exception-tracker-scheduler", daemon=True,
        )
        cls._thread.start()
        logger.info("Scheduler thread started (interval=%ss)", interval_seconds)

    @classmethod
    def stop(cls) -> None:
        """Signal the background thread to exit."""
        if cls._stop_event is not None:
            cls._stop_event.set()
        if cls._thread is not None:
            cls._thread.join(timeout=5)
        cls._thread = None
        cls._stop_event = None
