"""
Worker loop for smart-assignment jobs.

The API creates a job record and either runs it in a background task
(``process_jobs_inline``) or pushes its id onto the queue for this worker.
The optimizer reports its stages back into the job record as it goes.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Optional

from bus_manager.assignment import AssignmentConstraints, smart_assign
from bus_manager.config import get_settings
from bus_manager.db import DbClient, JobRecord, JobStatus
from bus_manager.dependencies import (
    get_db_client,
    get_geocoder,
    get_queue_client,
    get_roster_store,
)
from bus_manager.maps import Geocoder
from bus_manager.queue import JobQueue
from bus_manager.roster import RosterStore

logger = logging.getLogger(__name__)

ASSIGNMENT_JOB = "smart_assignment"
NO_DATA_ERROR = "אין תלמידים או אוטובוסים עם כתובות תקינות"


def _constraints(params: dict, settings) -> AssignmentConstraints:
    return AssignmentConstraints(
        max_bus_capacity=params.get("max_bus_capacity") or settings.max_bus_capacity,
        max_ride_time_minutes=params.get("max_ride_time_minutes") or settings.max_ride_time_minutes,
        max_total_route_minutes=params.get("max_total_route_minutes")
        or settings.max_total_route_minutes,
        adaptive=params.get("adaptive", True),
    )


def process_job(
    job: JobRecord,
    db: DbClient,
    store: Optional[RosterStore] = None,
    geocoder: Optional[Geocoder] = None,
) -> None:
    """
    Run one assignment job and record its result or error on the job.
    """
    settings = get_settings()
    store = store or get_roster_store()
    geocoder = geocoder or get_geocoder()
    params = job.params or {}

    def report(stage: str, fraction: float) -> None:
        db.update_job_progress(job.job_id, stage=stage, progress_percent=fraction)

    db.update_job_progress(
        job.job_id, status=JobStatus.RUNNING, stage="LOAD_ROSTER", progress_percent=0.02
    )
    try:
        students = store.list_students()
        buses = store.list_buses()
        bus_ids = params.get("bus_ids")
        if bus_ids:
            buses = [b for b in buses if b.get("id") in bus_ids]
        logger.info(
            "[%s] Assigning %d students to %d buses (%s)",
            job.job_id,
            len(students),
            len(buses),
            params.get("algorithm", "local_search"),
        )

        rng = random.Random(settings.optimizer_seed) if settings.optimizer_seed is not None else None
        result = smart_assign(
            students,
            buses,
            geocoder,
            algorithm=params.get("algorithm", "local_search"),
            constraints=_constraints(params, settings),
            progress=report,
            rng=rng,
        )
    except Exception as exc:
        logger.exception("[%s] Assignment failed: %s", job.job_id, exc)
        db.save_job_error(job.job_id, str(exc))
        db.update_job_progress(
            job.job_id, status=JobStatus.ERROR, stage="ERROR", progress_percent=0.0
        )
        return

    if result is None:
        logger.warning("[%s] Nothing to assign", job.job_id)
        db.save_job_error(job.job_id, NO_DATA_ERROR)
        db.update_job_progress(
            job.job_id, status=JobStatus.ERROR, stage="NO_DATA", progress_percent=1.0
        )
        return

    db.save_job_result(job.job_id, result)
    db.update_job_progress(
        job.job_id, status=JobStatus.SUCCESS, stage="SUCCESS", progress_percent=1.0
    )
    logger.info(
        "[%s] Assignment complete: %d students, %d unassigned",
        job.job_id,
        result["totalStudents"],
        result["unassignedCount"],
    )


def process_next(
    *,
    db: Optional[DbClient] = None,
    queue: Optional[JobQueue] = None,
    block: bool = True,
    timeout: Optional[int] = None,
    store: Optional[RosterStore] = None,
    geocoder: Optional[Geocoder] = None,
) -> bool:
    """
    Take one job from the queue (or any WAITING job in the DB) and run it.
    Returns True if a job was processed.
    """
    if db is None:
        db = get_db_client()
    if queue is None:
        queue = get_queue_client()

    job_id = queue.dequeue(block=block, timeout=timeout)
    if job_id:
        job = db.claim_job(job_id)
        if not job:
            logger.warning("Job %s from queue is missing or already claimed", job_id)
            return False
        logger.info("Claimed job %s, %d more queued", job_id, queue.depth())
    else:
        # Jobs created while the queue was unavailable are still WAITING in the DB.
        job = db.claim_next_waiting_job()
        if not job:
            return False

    process_job(job, db, store=store, geocoder=geocoder)
    return True


def run_loop(poll_interval_seconds: float = 2.0) -> None:
    """
    Block on the queue forever. Intended to be run under systemd/supervisor.
    """
    db = get_db_client()
    queue = get_queue_client()
    while True:
        try:
            db.requeue_stale_locks(lock_timeout_seconds=900)
        except Exception:
            logger.exception("Failed to requeue stale locks")
        processed = process_next(db=db, queue=queue, block=True, timeout=int(poll_interval_seconds))
        if not processed:
            time.sleep(poll_interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_loop()
