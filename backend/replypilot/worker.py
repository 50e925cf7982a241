from __future__ import annotations

import argparse
import os
import signal
import socket
import time
from typing import Callable

from sqlalchemy.orm import Session

from .config import settings
from .database import SessionLocal
from .digest import sweep_due_buckets
from .logging_utils import configure_logging, log_event, log_warning
from .task_queue import claim_next_job, idle_sleep, process_job, requeue_stale_jobs


def parse_job_types(value: str | None) -> list[str] | None:
    if not value:
        return None
    job_types = [item.strip() for item in value.split(",") if item.strip()]
    return job_types or None


def run_once(db: Session, *, worker_id: str, job_types: list[str] | None = None) -> bool:
    """Claim and process a single due job. Returns False when nothing was due."""
    job = claim_next_job(db, worker_id=worker_id, job_types=job_types)
    if not job:
        return False
    process_job(db, job)
    return True


class MaintenanceSchedule:
    """Housekeeping the worker runs between jobs, each task on its own interval.

    ``requeue`` recovers jobs whose worker died mid-run; ``sweep`` enqueues
    flushes for digest buckets that are due but have no live flush job.
    An interval of 0 disables a task.
    """

    def __init__(
        self,
        *,
        requeue_every: float,
        sweep_every: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.intervals = {"requeue": requeue_every, "sweep": sweep_every}
        self._clock = clock
        self._last_run: dict[str, float] = {}

    @classmethod
    def from_settings(cls) -> "MaintenanceSchedule":
        return cls(
            requeue_every=max(30, settings.task_queue_stale_after_seconds),
            sweep_every=settings.digest_sweep_interval_seconds,
        )

    def due(self, task: str, now: float) -> bool:
        interval = self.intervals[task]
        if not interval:
            return False
        last = self._last_run.get(task)
        return last is None or now - last >= interval

    def run_due(self, db: Session) -> dict[str, int]:
        now = self._clock()
        ran: dict[str, int] = {}
        if self.due("requeue", now):
            ran["requeue"] = requeue_stale_jobs(db)
            self._last_run["requeue"] = now
        if self.due("sweep", now):
            ran["sweep"] = sweep_due_buckets(db)
            self._last_run["sweep"] = now
        return ran


def serve(worker_id: str, job_types: list[str] | None, should_stop: Callable[[], bool]) -> None:
    schedule = MaintenanceSchedule.from_settings()
    while not should_stop():
        with SessionLocal() as db:
            try:
                schedule.run_due(db)
                if run_once(db, worker_id=worker_id, job_types=job_types):
                    continue
            except Exception as exc:  # noqa: BLE001
                db.rollback()
                log_warning("worker_loop_error", worker_id=worker_id, error=str(exc))
        idle_sleep()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Process queued notification and SMS jobs.")
    parser.add_argument(
        "--job-types",
        default=os.getenv("WORKER_JOB_TYPES"),
        help="Comma-separated job types to consume (default: all).",
    )
    args = parser.parse_args(argv)

    configure_logging()

    worker_id = os.getenv("WORKER_ID") or f"{socket.gethostname()}:{os.getpid()}"
    job_types = parse_job_types(args.job_types)
    stop = {"requested": False}

    def _request_stop(signum, _frame):  # noqa: ANN001
        stop["requested"] = True
        log_warning("worker_shutdown_requested", worker_id=worker_id, signal=signum)

    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, _request_stop)

    log_event(
        "worker_started",
        worker_id=worker_id,
        job_types=job_types or "all",
        poll_interval_seconds=settings.task_queue_poll_interval_seconds,
        digest_sweep_interval_seconds=settings.digest_sweep_interval_seconds,
    )
    serve(worker_id, job_types, lambda: stop["requested"])
    log_event("worker_stopped", worker_id=worker_id)


if __name__ == "__main__":
    main()
