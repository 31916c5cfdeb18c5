"""
Tests for job auto-creation, start/complete and rescheduling.
"""

import asyncio
from datetime import datetime

import pytest

from fieldroute.distance import DriveTimeEstimator
from fieldroute.lifecycle import JobLifecycle, next_cut_date
from fieldroute.models import Frequency, JobStatus

from conftest import InMemoryCustomerStore, InMemoryJobStore

TODAY = "2025-06-02"


def build_lifecycle(config, jobs=(), customers=(), estimator=None):
    job_store = InMemoryJobStore(list(jobs))
    customer_store = InMemoryCustomerStore(list(customers))
    lifecycle = JobLifecycle(config, job_store, customer_store, estimator=estimator)
    return lifecycle, job_store, customer_store


@pytest.mark.parametrize("last_cut,frequency,expected", [
    ("2025-06-02", Frequency.WEEKLY, "2025-06-09"),
    ("2025-06-02", Frequency.BIWEEKLY, "2025-06-16"),
    ("2025-06-02", Frequency.MONTHLY, "2025-07-02"),
    ("2025-01-31", Frequency.MONTHLY, "2025-02-28"),
    ("2024-01-31", Frequency.MONTHLY, "2024-02-29"),
    ("2025-12-15", "monthly", "2026-01-15"),
])
def test_next_cut_date(last_cut, frequency, expected):
    assert next_cut_date(last_cut, frequency) == expected


def test_ensure_jobs_creates_missing_jobs(config, make_job, make_customer):
    customers = [
        make_customer("c1", "1 Oak Lane", next_cut_date="2025-06-03"),
        make_customer("c2", "2 Oak Lane", next_cut_date="2025-06-03"),
        make_customer("c3", "3 Oak Lane", next_cut_date="2025-08-01"),  # beyond the horizon
        make_customer("c4", "4 Oak Lane"),
    ]
    existing = [make_job("old", "2025-06-03", customer_id="other", order=4)]
    lifecycle, job_store, _ = build_lifecycle(config, existing, customers)

    result = asyncio.run(lifecycle.ensure_jobs(today=TODAY))

    assert result.created == 2
    created = sorted((j for j in job_store.fetch_jobs() if j.id != "old"), key=lambda j: j.order)
    assert [(j.customer_id, j.order, j.status) for j in created] == [
        ("c1", 5, JobStatus.SCHEDULED),
        ("c2", 6, JobStatus.SCHEDULED),
    ]


def test_ensure_jobs_is_idempotent(config, make_customer):
    customers = [make_customer("c1", "1 Oak Lane", next_cut_date="2025-06-03")]
    lifecycle, job_store, _ = build_lifecycle(config, customers=customers)

    asyncio.run(lifecycle.ensure_jobs(today=TODAY))
    second = asyncio.run(lifecycle.ensure_jobs(today=TODAY))

    assert second.created == 0
    assert second.skipped == 1
    assert len(job_store.fetch_jobs()) == 1


def test_concurrent_ensure_jobs_creates_one_job(config, make_customer):
    customers = [make_customer("c1", "1 Oak Lane", next_cut_date="2025-06-03")]
    lifecycle, job_store, _ = build_lifecycle(config, customers=customers)

    async def run():
        return await asyncio.gather(*(lifecycle.ensure_jobs(today=TODAY) for _ in range(5)))

    results = asyncio.run(run())

    assert len(job_store.fetch_jobs()) == 1
    assert sum(r.created for r in results) == 1
    assert sum(r.errors for r in results) == 0


def test_duplicate_from_store_is_benign(config, make_customer):
    """Two lifecycles do not share in-flight state; the store constraint decides."""
    customers = [make_customer("c1", "1 Oak Lane", next_cut_date="2025-06-03")]
    job_store = InMemoryJobStore()
    customer_store = InMemoryCustomerStore(customers)
    first = JobLifecycle(config, job_store, customer_store)
    second = JobLifecycle(config, job_store, customer_store)

    async def run():
        return await asyncio.gather(first.ensure_jobs(today=TODAY), second.ensure_jobs(today=TODAY))

    results = asyncio.run(run())

    assert len(job_store.fetch_jobs()) == 1
    assert sum(r.created for r in results) == 1
    assert sum(r.duplicates + r.skipped for r in results) == 1
    assert sum(r.errors for r in results) == 0


def test_conflict_message_counts_as_duplicate(config, make_customer):
    customers = [make_customer("c1", "1 Oak Lane", next_cut_date="2025-06-03")]
    lifecycle, job_store, _ = build_lifecycle(config, customers=customers)

    def conflict(job):
        raise RuntimeError("Request failed with status 409")
    job_store.add_job = conflict

    result = asyncio.run(lifecycle.ensure_jobs(today=TODAY))

    assert result.duplicates == 1
    assert result.errors == 0


def test_other_store_errors_are_counted(config, make_customer):
    customers = [make_customer("c1", "1 Oak Lane", next_cut_date="2025-06-03")]
    lifecycle, job_store, _ = build_lifecycle(config, customers=customers)

    def broken(job):
        raise RuntimeError("connection reset")
    job_store.add_job = broken

    result = asyncio.run(lifecycle.ensure_jobs(today=TODAY))

    assert result.errors == 1
    assert lifecycle._in_flight == set()


def test_start_and_elapsed(config, make_job):
    lifecycle, job_store, _ = build_lifecycle(config, [make_job("j1", TODAY)])
    started_at = datetime(2025, 6, 2, 8, 0)

    job = lifecycle.start_job("j1", now=started_at)

    assert job.status == JobStatus.IN_PROGRESS
    assert job_store.get("j1").start_time == started_at
    assert lifecycle.elapsed_minutes(job, now=datetime(2025, 6, 2, 8, 45)) == 45


def test_elapsed_without_start(config, make_job):
    lifecycle, _, _ = build_lifecycle(config)

    assert lifecycle.elapsed_minutes(make_job("j1", TODAY)) == 0


def test_complete_advances_customer_and_creates_follow_on(config, make_job, make_customer):
    customer = make_customer("c1", "1 Oak Lane", frequency=Frequency.BIWEEKLY, next_cut_date=TODAY)
    jobs = [
        make_job("j1", TODAY, customer_id="c1", status=JobStatus.IN_PROGRESS,
                 start_time=datetime(2025, 6, 2, 9, 0)),
        make_job("other", "2025-06-16", customer_id="c2", order=3),
    ]
    lifecycle, job_store, customer_store = build_lifecycle(config, jobs, [customer])

    outcome = lifecycle.complete_job("j1", notes="gate code 1234", now=datetime(2025, 6, 2, 9, 50))

    done = job_store.get("j1")
    assert done.status == JobStatus.COMPLETED
    assert done.total_time == 50
    assert done.notes == "gate code 1234"
    assert done.end_time == datetime(2025, 6, 2, 9, 50)

    stored = customer_store.get("c1")
    assert stored.last_cut_date == TODAY
    assert stored.next_cut_date == "2025-06-16"

    assert outcome.follow_on is not None
    assert outcome.follow_on.date == "2025-06-16"
    assert outcome.follow_on.order == 4


def test_complete_does_not_duplicate_follow_on(config, make_job, make_customer):
    customer = make_customer("c1", "1 Oak Lane", frequency=Frequency.WEEKLY, next_cut_date=TODAY)
    jobs = [
        make_job("j1", TODAY, customer_id="c1"),
        make_job("next", "2025-06-09", customer_id="c1"),
    ]
    lifecycle, job_store, _ = build_lifecycle(config, jobs, [customer])

    outcome = lifecycle.complete_job("j1", total_minutes=30)

    assert outcome.follow_on is None
    assert len(job_store.fetch_jobs()) == 2


def test_complete_estimates_drive_time(config, make_job, make_customer):
    customers = [
        make_customer("c1", "100 Oak Lane"),
        make_customer("c2", "120 Oak Lane"),
    ]
    jobs = [
        make_job("first", TODAY, customer_id="c1", order=1, status=JobStatus.COMPLETED),
        make_job("second", TODAY, customer_id="c2", order=2),
    ]
    lifecycle, job_store, _ = build_lifecycle(config, jobs, customers, estimator=DriveTimeEstimator(config))

    lifecycle.complete_job("second", total_minutes=40)

    assert job_store.get("second").drive_time == 2


def test_complete_missing_job_raises(config):
    lifecycle, _, _ = build_lifecycle(config)

    with pytest.raises(LookupError):
        lifecycle.complete_job("nope", total_minutes=10)


def test_reschedule_moves_job_and_customer(config, make_job, make_customer):
    customer = make_customer("c1", "1 Oak Lane", next_cut_date=TODAY)
    lifecycle, job_store, customer_store = build_lifecycle(
        config, [make_job("j1", TODAY, customer_id="c1", order=2)], [customer]
    )

    moved = lifecycle.reschedule_job("j1", "2025-06-04", time_slot=3)

    assert moved.date == "2025-06-04"
    assert moved.scheduled_time == "8:00"
    assert moved.order is None
    assert customer_store.get("c1").next_cut_date == "2025-06-04"


def test_reschedule_slot_respects_day_start(config, make_job):
    lifecycle, job_store, _ = build_lifecycle(config, [make_job("j1", TODAY)])
    lifecycle.timing_store.set("2025-06-04", 9)

    moved = lifecycle.reschedule_job("j1", "2025-06-04", time_slot=0)

    assert moved.scheduled_time == "9:00"


def test_change_day_start_lifts_early_jobs(config, make_job):
    jobs = [
        make_job("early", TODAY, scheduled_time="6:00"),
        make_job("late", TODAY, scheduled_time="11:30"),
        make_job("done", TODAY, scheduled_time="5:00", status=JobStatus.COMPLETED),
        make_job("elsewhere", "2025-06-03", scheduled_time="5:00"),
    ]
    lifecycle, job_store, _ = build_lifecycle(config, jobs)

    lifted = lifecycle.change_day_start(TODAY, 9)

    assert [j.id for j in lifted] == ["early"]
    assert job_store.get("early").scheduled_time == "9:00"
    assert job_store.get("late").scheduled_time == "11:30"
    assert job_store.get("done").scheduled_time == "5:00"
    assert job_store.get("elsewhere").scheduled_time == "5:00"
    assert lifecycle.timing_store.get(TODAY).start_hour == 9
