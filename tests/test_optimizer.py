"""
Tests for the multi-day route optimization orchestrator.
"""

import asyncio

import pytest

from fieldroute.distance import DriveTimeEstimator
from fieldroute.models import Job, JobStatus, RouteResult, RouteSegment, RouteStop
from fieldroute.optimizer import OptimizationStatus, RouteOptimizationOrchestrator

from conftest import InMemoryCustomerStore, InMemoryJobStore

TODAY = "2025-06-02"
TOMORROW = "2025-06-03"
DEPOT = "1 Depot Road"


class ReversingRouteProvider:
    """Visits stops in reverse input order; legs come from a fixed table."""

    def __init__(self, legs=None, fail_addresses=()):
        self.legs = legs or {}
        self.fail_addresses = set(fail_addresses)
        self.calls = []
        self.gate = None
        self.entered = None

    async def get_drive_time(self, origin, destination):
        return None

    async def optimize_route(self, origin, stops):
        self.calls.append([s.id for s in stops])
        if self.gate is not None and len(self.calls) == 1:
            self.entered.set()
            await self.gate.wait()
        if any(s.address in self.fail_addresses for s in stops):
            raise RuntimeError("quota exceeded")

        ordered = list(reversed(stops))
        path = [origin] + [s.address for s in ordered]
        segments = [
            RouteSegment(a, b, self.legs[(a, b)], f"{self.legs[(a, b)]} min")
            for a, b in zip(path, path[1:]) if (a, b) in self.legs
        ]
        return RouteResult(
            jobs=[RouteStop(id=s.id, address=s.address, order=i + 1) for i, s in enumerate(ordered)],
            segments=segments
        )


def customers_for(make_customer, *ids):
    return [make_customer(i, f"{i} Main Street") for i in ids]


def build(config, jobs, customers, provider, statuses=None, changes=None):
    job_store = InMemoryJobStore(jobs)
    orchestrator = RouteOptimizationOrchestrator(
        config,
        job_store,
        InMemoryCustomerStore(customers),
        provider,
        on_status_change=statuses.append if statuses is not None else None,
        on_changes_detected=(lambda: changes.append(1)) if changes is not None else None
    )
    return orchestrator, job_store


def test_single_job_day_is_not_sent(config, make_job, make_customer):
    provider = ReversingRouteProvider()
    jobs = [make_job("a", TODAY, customer_id="a", order=1, scheduled_time="5:00")]
    orchestrator, job_store = build(config, jobs, customers_for(make_customer, "a"), provider)

    summary = asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert provider.calls == []
    assert summary.days_skipped == 1
    assert job_store.updated == []
    assert orchestrator.state == OptimizationStatus.OPTIMIZED


def test_single_job_day_appends_unordered_jobs(config, make_job, make_customer):
    provider = ReversingRouteProvider()
    jobs = [
        make_job("a", TODAY, customer_id="a", order=1),
        make_job("done", TODAY, customer_id="done", status=JobStatus.COMPLETED),
    ]
    orchestrator, job_store = build(config, jobs, customers_for(make_customer, "a", "done"), provider)

    asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert provider.calls == []
    assert job_store.updated == ["done"]
    assert job_store.get("done").order == 2


def test_orders_and_times_follow_the_route(config, make_job, make_customer):
    legs = {
        (DEPOT, "c Main Street"): 7,
        ("c Main Street", "b Main Street"): 12,
    }
    provider = ReversingRouteProvider(legs)
    jobs = [make_job(i, TODAY, customer_id=i, order=n) for n, i in enumerate("abc", start=1)]
    orchestrator, job_store = build(config, jobs, customers_for(make_customer, "a", "b", "c"), provider)

    summary = asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert provider.calls == [["a", "b", "c"]]
    # 60 service minutes plus the leg, or the 10 minute fallback when the leg is missing
    assert [(i, job_store.get(i).order, job_store.get(i).scheduled_time) for i in "cba"] == [
        ("c", 1, "5:00"),
        ("b", 2, "6:12"),
        ("a", 3, "7:22"),
    ]
    assert summary.days_optimized == 1
    assert summary.jobs_succeeded == 3
    assert summary.ok


def test_route_starts_at_day_override(config, make_job, make_customer):
    provider = ReversingRouteProvider()
    jobs = [make_job(i, TODAY, customer_id=i, order=n) for n, i in enumerate("ab", start=1)]
    orchestrator, job_store = build(config, jobs, customers_for(make_customer, "a", "b"), provider)
    orchestrator.timing_store.set(TODAY, 8)

    asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert job_store.get("b").scheduled_time == "8:00"
    assert job_store.get("a").scheduled_time == "9:10"


def test_non_scheduled_jobs_stay_after_the_route(config, make_job, make_customer):
    provider = ReversingRouteProvider()
    jobs = [
        make_job("a", TODAY, customer_id="a", order=1),
        make_job("b", TODAY, customer_id="b", order=2),
        make_job("busy", TODAY, customer_id="busy", order=9, status=JobStatus.IN_PROGRESS),
        make_job("done", TODAY, customer_id="done", status=JobStatus.COMPLETED),
    ]
    customers = customers_for(make_customer, "a", "b", "busy", "done")
    orchestrator, job_store = build(config, jobs, customers, provider)

    asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert provider.calls == [["a", "b"]]
    assert job_store.get("busy").order == 9
    assert job_store.get("done").order == 10
    assert "busy" not in job_store.updated


def test_failed_day_is_skipped(config, make_job, make_customer):
    provider = ReversingRouteProvider(fail_addresses={"x Main Street"})
    jobs = [
        make_job("a", TODAY, customer_id="a", order=1),
        make_job("x", TODAY, customer_id="x", order=2),
        make_job("b", TOMORROW, customer_id="b", order=1),
        make_job("c", TOMORROW, customer_id="c", order=2),
    ]
    customers = customers_for(make_customer, "a", "x", "b", "c")
    orchestrator, job_store = build(config, jobs, customers, provider)

    summary = asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert summary.days_failed == 1
    assert summary.days_optimized == 1
    assert not summary.ok
    assert job_store.get("a").order == 1
    assert job_store.get("x").scheduled_time is None
    assert job_store.get("c").order == 1
    assert job_store.get("b").order == 2


def test_status_listener_sees_each_transition(config, make_job, make_customer):
    statuses = []
    jobs = [make_job(i, TODAY, customer_id=i, order=n) for n, i in enumerate("ab", start=1)]
    orchestrator, _ = build(
        config, jobs, customers_for(make_customer, "a", "b"), ReversingRouteProvider(), statuses=statuses
    )

    asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert statuses == [OptimizationStatus.OPTIMIZING, OptimizationStatus.OPTIMIZED]


def test_failure_returns_to_idle(config, make_job, make_customer):
    statuses = []
    orchestrator, job_store = build(config, [], [], ReversingRouteProvider(), statuses=statuses)

    def broken():
        raise RuntimeError("database offline")
    job_store.fetch_jobs = broken

    with pytest.raises(RuntimeError):
        asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert statuses == [OptimizationStatus.OPTIMIZING, OptimizationStatus.IDLE]
    assert orchestrator.state == OptimizationStatus.IDLE


def test_superseded_pass_does_not_persist(config, make_job, make_customer):
    provider = ReversingRouteProvider()
    statuses = []
    jobs = [make_job(i, TODAY, customer_id=i, order=n) for n, i in enumerate("ab", start=1)]
    orchestrator, job_store = build(
        config, jobs, customers_for(make_customer, "a", "b"), provider, statuses=statuses
    )

    async def run():
        provider.gate = asyncio.Event()
        provider.entered = asyncio.Event()
        first = asyncio.create_task(orchestrator.optimize_all(DEPOT, today=TODAY))
        await provider.entered.wait()
        second = await orchestrator.optimize_all(DEPOT, today=TODAY)
        provider.gate.set()
        return await first, second

    first, second = asyncio.run(run())

    assert first.stale
    assert not second.stale
    assert sorted(job_store.updated) == ["a", "b"]
    assert statuses == [OptimizationStatus.OPTIMIZING, OptimizationStatus.OPTIMIZED]


def test_failed_write_keeps_original_order_in_snapshot(config, make_job, make_customer):
    jobs = [make_job(i, TODAY, customer_id=i, order=n) for n, i in enumerate("ab", start=1)]
    orchestrator, job_store = build(config, jobs, customers_for(make_customer, "a", "b"), ReversingRouteProvider())
    job_store.fail_ids = {"a"}

    summary = asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert summary.jobs_failed == 1
    assert summary.jobs_succeeded == 1
    assert orchestrator.snapshot == {"a": 1, "b": 1}


def test_drift_detection(config, make_job, make_customer):
    changes = []
    jobs = [make_job(i, TODAY, customer_id=i, order=n) for n, i in enumerate("ab", start=1)]
    orchestrator, job_store = build(
        config, jobs, customers_for(make_customer, "a", "b"), ReversingRouteProvider(), changes=changes
    )
    asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert not orchestrator.detect_changes(job_store.fetch_jobs())

    drifted = job_store.fetch_jobs()
    for job in drifted:
        job.order = 3 - job.order

    assert orchestrator.detect_changes(drifted)
    assert changes == [1]
    assert orchestrator.state == OptimizationStatus.IDLE

    # Only an optimized schedule can drift
    assert not orchestrator.detect_changes(drifted[:1])
    assert changes == [1]


def test_detect_changes_before_any_pass(config, make_job):
    orchestrator, _ = build(config, [], [], ReversingRouteProvider())

    assert not orchestrator.detect_changes([make_job("a", TODAY, order=1)])


def test_new_jobs_after_a_pass_are_not_drift(config, make_job, make_customer):
    changes = []
    jobs = [make_job(i, TODAY, customer_id=i, order=n) for n, i in enumerate("ab", start=1)]
    orchestrator, job_store = build(
        config, jobs, customers_for(make_customer, "a", "b"), ReversingRouteProvider(), changes=changes
    )
    asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    job_store.add_job(Job(id="z", customer_id="z", date="2025-07-20", order=1))

    assert not orchestrator.detect_changes(job_store.fetch_jobs())
    assert changes == []
    assert orchestrator.state == OptimizationStatus.OPTIMIZED


def test_unordered_jobs_stay_out_of_the_snapshot(config, make_job, make_customer):
    jobs = [
        make_job("a", TODAY, customer_id="a", order=1),
        make_job("later", "2025-08-30", customer_id="later"),  # beyond the horizon, no order
    ]
    orchestrator, job_store = build(config, jobs, customers_for(make_customer, "a", "later"), ReversingRouteProvider())

    asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert orchestrator.snapshot == {"a": 1}


def test_route_legs_fill_the_drive_time_cache(config, make_job, make_customer):
    legs = {
        (DEPOT, "b Main Street"): 7,
        ("b Main Street", "a Main Street"): 41,
    }
    jobs = [make_job(i, TODAY, customer_id=i, order=n) for n, i in enumerate("ab", start=1)]
    estimator = DriveTimeEstimator(config)
    estimator.store("stale", "entry", estimator.get("stale", "entry"))
    orchestrator = RouteOptimizationOrchestrator(
        config,
        InMemoryJobStore(jobs),
        InMemoryCustomerStore(customers_for(make_customer, "a", "b")),
        ReversingRouteProvider(legs),
        estimator=estimator
    )

    asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert estimator.cached("stale", "entry") is None
    assert estimator.get("b Main Street", "a Main Street").duration_text == "41 min"
    assert estimator.get(DEPOT, "b Main Street").duration_minutes == 7
    assert len(estimator) == 2


def test_pass_with_only_failed_days_returns_to_idle(config, make_job, make_customer):
    statuses = []
    provider = ReversingRouteProvider(fail_addresses={"a Main Street"})
    jobs = [make_job(i, TODAY, customer_id=i, order=n) for n, i in enumerate("ab", start=1)]
    orchestrator, _ = build(config, jobs, customers_for(make_customer, "a", "b"), provider, statuses=statuses)

    summary = asyncio.run(orchestrator.optimize_all(DEPOT, today=TODAY))

    assert summary.days_failed == 1
    assert summary.days_optimized == 0
    assert orchestrator.state == OptimizationStatus.IDLE
    assert statuses == [OptimizationStatus.OPTIMIZING, OptimizationStatus.IDLE]
