"""Tests for JobStore and JobRunner."""

from datetime import datetime, timedelta, timezone

from orderflow.jobs import MAX_ATTEMPTS, JobRunner
from orderflow.models import JobStatus

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def schedule(services, kind="test_job", target_id="t-1", run_at=NOW):
    with services.db.unit_of_work() as uow:
        return services.jobs.schedule(uow, kind, target_id, run_at)


def load(services, job_id):
    with services.db.unit_of_work() as uow:
        return services.jobs.get(uow, job_id)


class TestJobStore:
    def test_schedule_and_due(self, services):
        early = schedule(services, target_id="early", run_at=NOW - timedelta(minutes=1))
        schedule(services, target_id="late", run_at=NOW + timedelta(minutes=1))

        with services.db.unit_of_work() as uow:
            due = services.jobs.due(uow, "2026-01-01T12:00:00.000000Z", limit=10)

        assert [job.id for job in due] == [early.id]
        assert due[0].status == JobStatus.PENDING

    def test_claim_only_once(self, services):
        job = schedule(services)

        with services.db.unit_of_work() as uow:
            assert services.jobs.claim(uow, job.id)
            assert not services.jobs.claim(uow, job.id)

        claimed = load(services, job.id)
        assert claimed.status == JobStatus.DONE
        assert claimed.attempts == 1

    def test_rollback_releases_claim(self, services):
        job = schedule(services)

        try:
            with services.db.unit_of_work() as uow:
                services.jobs.claim(uow, job.id)
                raise RuntimeError("handler crashed")
        except RuntimeError:
            pass

        assert load(services, job.id).status == JobStatus.PENDING


class TestJobRunner:
    def test_runs_handler(self, services):
        seen = []
        runner = JobRunner(services.db, services.jobs, {"test_job": lambda uow, target: seen.append(target)})
        job = schedule(services, target_id="order-9")

        runs = runner.run_due(NOW)

        assert seen == ["order-9"]
        assert runs[0].job_id == job.id
        assert runs[0].succeeded
        assert load(services, job.id).status == JobStatus.DONE
        assert runner.run_due(NOW) == []

    def test_failure_is_retried_then_parked(self, services):
        def boom(uow, target):
            raise ValueError("nope")

        runner = JobRunner(services.db, services.jobs, {"test_job": boom})
        job = schedule(services)

        for attempt in range(1, MAX_ATTEMPTS + 1):
            runs = runner.run_due(NOW)
            assert len(runs) == 1
            assert not runs[0].succeeded
            assert load(services, job.id).attempts == attempt

        parked = load(services, job.id)
        assert parked.status == JobStatus.FAILED
        assert "ValueError: nope" in parked.last_error
        assert runner.run_due(NOW) == []

    def test_unknown_kind_fails(self, services):
        runner = JobRunner(services.db, services.jobs, {})
        job = schedule(services, kind="mystery")

        runs = runner.run_due(NOW)

        assert not runs[0].succeeded
        assert "mystery" in runs[0].error
        assert load(services, job.id).status == JobStatus.PENDING
