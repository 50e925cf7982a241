#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


def _bootstrap_imports() -> None:
    backend_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(backend_root))

    os.environ.setdefault("EMAIL_ENABLED", "false")


def main() -> int:
    parser = argparse.ArgumentParser(description="Enqueue scheduled maintenance jobs for the notification worker.")
    parser.add_argument(
        "--sweep-digests",
        action="store_true",
        help="Enqueue flush jobs for pending digest buckets that are past due.",
    )
    parser.add_argument(
        "--sweep-job",
        action="store_true",
        help="Enqueue a single sweep_digests job instead of sweeping inline.",
    )
    parser.add_argument("--requeue-stale", action="store_true", help="Put stale running jobs back on the queue.")
    parser.add_argument("--all", action="store_true", help="Run every maintenance step.")
    args = parser.parse_args()

    _bootstrap_imports()

    from replypilot import models  # noqa: PLC0415
    from replypilot.database import SessionLocal  # noqa: PLC0415
    from replypilot.digest import sweep_due_buckets  # noqa: PLC0415
    from replypilot.logging_utils import configure_logging  # noqa: PLC0415
    from replypilot.task_queue import JOB_TYPE_SWEEP_DIGESTS, enqueue_job, requeue_stale_jobs  # noqa: PLC0415

    configure_logging()

    wanted = {
        "sweep": bool(args.sweep_digests or args.all),
        "sweep_job": bool(args.sweep_job),
        "requeue": bool(args.requeue_stale or args.all),
    }
    if not any(wanted.values()):
        wanted["sweep"] = True
        wanted["requeue"] = True

    with SessionLocal() as db:
        if wanted["requeue"]:
            count = requeue_stale_jobs(db)
            print(f"requeued stale jobs count={count}")

        if wanted["sweep"]:
            count = sweep_due_buckets(db)
            print(f"enqueued digest flush jobs count={count}")

        if wanted["sweep_job"]:
            existing = (
                db.query(models.BackgroundJob.id)
                .filter(
                    models.BackgroundJob.job_type == JOB_TYPE_SWEEP_DIGESTS,
                    models.BackgroundJob.status.in_(["queued", "running"]),
                )
                .first()
            )
            if existing:
                print("no jobs enqueued (already queued/running)")
            else:
                job = enqueue_job(db, JOB_TYPE_SWEEP_DIGESTS, {})
                print(f"enqueued job_type={JOB_TYPE_SWEEP_DIGESTS} job_id={job.id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
