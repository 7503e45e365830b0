"""Durable scheduled jobs, polled by a worker."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select, update

from .db import Database, UnitOfWork, scheduled_jobs
from .log import get_logger
from .models import JobStatus, ScheduledJob, _format_timestamp

EXPIRE_UNPAID_ORDER = "expire_unpaid_order"

# Attempts before a failing job is parked as FAILED
MAX_ATTEMPTS = 3

JobHandler = Callable[[UnitOfWork, str], None]


def _row_to_job(row) -> ScheduledJob:
    return ScheduledJob(
        id=row.id,
        kind=row.kind,
        target_id=row.target_id,
        run_at=row.run_at,
        status=JobStatus(row.status),
        attempts=row.attempts,
        last_error=row.last_error,
        created_at=row.created_at,
    )


class JobStore:
    """Reads and writes the scheduled_jobs table."""

    def schedule(self, uow: UnitOfWork, kind: str, target_id: str, run_at: datetime) -> ScheduledJob:
        """Add a job; it becomes visible when the caller's transaction commits."""
        job = ScheduledJob.create(kind, target_id, run_at)
        uow.execute(scheduled_jobs.insert().values(**job.to_dict()))
        return job

    def get(self, uow: UnitOfWork, job_id: str) -> ScheduledJob | None:
        row = uow.execute(select(scheduled_jobs).where(scheduled_jobs.c.id == job_id)).first()
        return _row_to_job(row) if row is not None else None

    def list_jobs(self, uow: UnitOfWork, target_id: str | None = None) -> list[ScheduledJob]:
        stmt = select(scheduled_jobs).order_by(scheduled_jobs.c.run_at)
        if target_id is not None:
            stmt = stmt.where(scheduled_jobs.c.target_id == target_id)
        return [_row_to_job(row) for row in uow.execute(stmt)]

    def due(self, uow: UnitOfWork, now: str, limit: int) -> list[ScheduledJob]:
        stmt = (
            select(scheduled_jobs)
            .where(scheduled_jobs.c.status == JobStatus.PENDING.value)
            .where(scheduled_jobs.c.run_at <= now)
            .order_by(scheduled_jobs.c.run_at)
            .limit(limit)
        )
        return [_row_to_job(row) for row in uow.execute(stmt)]

    def claim(self, uow: UnitOfWork, job_id: str) -> bool:
        """
        Mark a pending job DONE inside the caller's transaction.

        Returns False if another worker already took it.
        """
        result = uow.execute(
            update(scheduled_jobs)
            .where(scheduled_jobs.c.id == job_id)
            .where(scheduled_jobs.c.status == JobStatus.PENDING.value)
            .values(status=JobStatus.DONE.value, attempts=scheduled_jobs.c.attempts + 1)
        )
        return result.rowcount == 1

    def record_failure(self, uow: UnitOfWork, job_id: str, error: str) -> ScheduledJob | None:
        """Count a failed attempt; park the job as FAILED after MAX_ATTEMPTS."""
        job = self.get(uow, job_id)
        if job is None or job.status != JobStatus.PENDING:
            return job
        attempts = job.attempts + 1
        status = JobStatus.FAILED if attempts >= MAX_ATTEMPTS else JobStatus.PENDING
        uow.execute(
            update(scheduled_jobs)
            .where(scheduled_jobs.c.id == job_id)
            .values(attempts=attempts, status=status.value, last_error=error[:2000])
        )
        return self.get(uow, job_id)


@dataclass
class JobRun:
    """Outcome of running one job."""

    job_id: str
    kind: str
    target_id: str
    succeeded: bool
    error: str | None = None


class JobRunner:
    """
    Runs due jobs.

    Each job runs in its own unit of work together with the claim, so a job's
    effects and its DONE marker commit together. Jobs survive restarts because
    they live in the database; nothing is scheduled in process memory.
    """

    def __init__(
        self,
        db: Database,
        store: JobStore,
        handlers: dict[str, JobHandler],
        batch_size: int = 50,
    ):
        self.db = db
        self.store = store
        self.handlers = handlers
        self.batch_size = batch_size
        self._log = get_logger("jobs")

    def run_due(self, now: datetime | None = None) -> list[JobRun]:
        """Run every job whose run_at has passed. Returns one JobRun per attempted job."""
        now_ts = _format_timestamp(now or datetime.now(timezone.utc))
        with self.db.unit_of_work() as uow:
            jobs = self.store.due(uow, now_ts, self.batch_size)

        runs: list[JobRun] = []
        for job in jobs:
            run = self._run_one(job)
            if run is not None:
                runs.append(run)
        return runs

    def _run_one(self, job: ScheduledJob) -> JobRun | None:
        handler = self.handlers.get(job.kind)
        try:
            with self.db.unit_of_work() as uow:
                if not self.store.claim(uow, job.id):
                    return None
                if handler is None:
                    raise LookupError(f"no handler for job kind {job.kind}")
                handler(uow, job.target_id)
        except Exception as e:
            with self.db.unit_of_work() as uow:
                updated = self.store.record_failure(uow, job.id, f"{type(e).__name__}: {e}")
            self._log.error(
                "job_failed",
                job_id=job.id,
                kind=job.kind,
                target_id=job.target_id,
                error=str(e),
                attempts=updated.attempts if updated else None,
            )
            return JobRun(job.id, job.kind, job.target_id, succeeded=False, error=str(e))

        self._log.info("job_done", job_id=job.id, kind=job.kind, target_id=job.target_id)
        return JobRun(job.id, job.kind, job.target_id, succeeded=True)
