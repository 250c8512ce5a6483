"""
Job registry state transitions.
"""
from datetime import timedelta

import pytest

from quotaledger.core.errors import InvalidTransitionError, NotFoundError
from quotaledger.features.jobs.registry import JobRegistry
from quotaledger.models.job import JobStatus


def test_job_lifecycle():
    jobs = JobRegistry()
    job = jobs.register("audit.drain")
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0

    running = jobs.mark_running(job.job_id)
    assert running.status == JobStatus.RUNNING
    assert running.attempts == 1

    done = jobs.mark_succeeded(job.job_id, {"written": 3})
    assert done.status == JobStatus.SUCCEEDED
    assert done.result == {"written": 3}
    assert jobs.get(job.job_id) == done


def test_failed_job_keeps_error():
    jobs = JobRegistry()
    job = jobs.register("audit.drain")
    jobs.mark_running(job.job_id)
    failed = jobs.mark_failed(job.job_id, "x" * 2000)
    assert failed.status == JobStatus.FAILED
    assert len(failed.error) == 500


def test_finished_jobs_cannot_transition():
    jobs = JobRegistry()
    job = jobs.register("audit.drain")
    jobs.mark_succeeded(job.job_id)
    with pytest.raises(InvalidTransitionError):
        jobs.mark_running(job.job_id)
    with pytest.raises(InvalidTransitionError):
        jobs.mark_failed(job.job_id, "late")


def test_unknown_job():
    jobs = JobRegistry()
    assert jobs.get("missing") is None
    with pytest.raises(NotFoundError):
        jobs.mark_running("missing")


def test_duplicate_job_id_rejected():
    jobs = JobRegistry()
    jobs.register("export", job_id="job-1")
    with pytest.raises(InvalidTransitionError):
        jobs.register("export", job_id="job-1")


def test_list_and_purge():
    jobs = JobRegistry()
    first = jobs.register("audit.drain")
    second = jobs.register("export")
    third = jobs.register("audit.drain")
    jobs.mark_succeeded(first.job_id)
    jobs.mark_running(third.job_id)

    assert [j.job_id for j in jobs.list_jobs("audit.drain")] == [first.job_id, third.job_id]
    assert [j.job_id for j in jobs.list_jobs(status=JobStatus.PENDING)] == [second.job_id]

    # Recently finished jobs survive a purge with a retention window
    assert jobs.purge_finished(older_than=timedelta(hours=1)) == 0
    assert jobs.purge_finished() == 1
    assert jobs.get(first.job_id) is None
    assert len(jobs.list_jobs()) == 2
