"""
Multi-day route optimization.

Sends each day's scheduled jobs to the route provider, renumbers them in
visiting order with walked start times, persists the changes and keeps a
snapshot of the resulting order for drift detection.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Callable, Dict, List, Optional

from .distance import DriveTimeEstimator
from .models import (
    CustomerStore, DriveTime, Job, JobStatus, JobStore, RouteProvider, RouteStop,
    copy_job, jobs_by_date
)
from .schemas import AppConfig
from .slots import DayTimingStore, TimeSlotAllocator
from .util.time_utils import add_days, format_hhmm


logger = logging.getLogger(__name__)


class OptimizationStatus(str, Enum):
    """Orchestrator state."""
    IDLE = "idle"
    OPTIMIZING = "optimizing"
    OPTIMIZED = "optimized"


@dataclass
class OptimizationSummary:
    """Aggregate outcome of one optimize pass."""
    days_optimized: int = 0
    days_skipped: int = 0
    days_failed: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    stale: bool = False

    @property
    def ok(self) -> bool:
        return self.days_failed == 0 and self.jobs_failed == 0 and not self.stale


class RouteOptimizationOrchestrator:
    """Runs optimize passes over the rolling horizon and tracks drift afterwards."""

    def __init__(
        self,
        config: AppConfig,
        job_store: JobStore,
        customer_store: CustomerStore,
        route_provider: RouteProvider,
        estimator: Optional[DriveTimeEstimator] = None,
        timing_store: Optional[DayTimingStore] = None,
        allocator: Optional[TimeSlotAllocator] = None,
        on_status_change: Optional[Callable[[OptimizationStatus], None]] = None,
        on_changes_detected: Optional[Callable[[], None]] = None
    ):
        self.config = config
        self.job_store = job_store
        self.customer_store = customer_store
        self.route_provider = route_provider
        self.estimator = estimator
        self.timing_store = timing_store or DayTimingStore(config)
        self.allocator = allocator or TimeSlotAllocator(config)
        self.on_status_change = on_status_change
        self.on_changes_detected = on_changes_detected

        self.state = OptimizationStatus.IDLE
        self.generation = 0
        self.snapshot: Dict[str, Optional[int]] = {}

    def _set_state(self, state: OptimizationStatus) -> None:
        if state == self.state:
            return
        logger.debug(f"Optimization state {self.state.value} -> {state.value}")
        self.state = state
        if self.on_status_change is not None:
            self.on_status_change(state)

    async def optimize_all(self, starting_address: str, today: Optional[str] = None) -> OptimizationSummary:
        """
        Optimize every day in the horizon starting at `today`.

        A newer call supersedes an older one: the older pass stops before
        persisting and never changes the state.

        Returns:
            OptimizationSummary with per-day and per-job counts
        """
        self.generation += 1
        generation = self.generation
        summary = OptimizationSummary()
        today = today or date.today().isoformat()

        self._set_state(OptimizationStatus.OPTIMIZING)
        if self.estimator is not None:
            self.estimator.clear_cache()

        try:
            jobs = await asyncio.to_thread(self.job_store.fetch_jobs)
            customers = await asyncio.to_thread(self.customer_store.fetch_customers)
            addresses = {c.id: c.address for c in customers}
            grouped = jobs_by_date(jobs)
            days = [add_days(today, i) for i in range(self.config.schedule.horizon_days)]

            logger.info(f"Optimizing {len(days)} days from {today} starting at '{starting_address}'")
            semaphore = asyncio.Semaphore(self.config.schedule.max_parallel_days)
            plans = await asyncio.gather(*(
                self._plan_day(day, grouped.get(day, []), addresses, starting_address, semaphore, summary)
                for day in days
            ))

            if generation != self.generation:
                logger.info(f"Optimize pass {generation} superseded before persisting")
                summary.stale = True
                return summary

            final = {job.id: job.order for job in jobs}
            for job in (job for plan in plans for job in plan):
                try:
                    await asyncio.to_thread(self.job_store.update_job, job)
                    summary.jobs_succeeded += 1
                    final[job.id] = job.order
                except Exception as e:
                    logger.error(f"Failed to persist optimized job {job.id}: {e}")
                    summary.jobs_failed += 1

            if generation != self.generation:
                summary.stale = True
                return summary

            # Unordered jobs have no optimized position to drift from
            self.snapshot = {job_id: order for job_id, order in final.items() if order is not None}
            if summary.days_failed and not summary.days_optimized:
                logger.warning(f"No day could be optimized ({summary.days_failed} failed)")
                self._set_state(OptimizationStatus.IDLE)
                return summary
            self._set_state(OptimizationStatus.OPTIMIZED)
            logger.info(
                f"Optimized {summary.days_optimized} days ({summary.days_failed} failed); "
                f"saved {summary.jobs_succeeded} jobs, {summary.jobs_failed} failed"
            )
            return summary

        except Exception as e:
            logger.error(f"Optimize pass failed: {e}")
            if generation == self.generation:
                self._set_state(OptimizationStatus.IDLE)
            raise

    async def _plan_day(
        self,
        day: str,
        day_jobs: List[Job],
        addresses: Dict[str, str],
        starting_address: str,
        semaphore: asyncio.Semaphore,
        summary: OptimizationSummary
    ) -> List[Job]:
        """Jobs on `day` whose order or scheduled time must change."""
        scheduled = self.allocator.sort_jobs(j for j in day_jobs if j.status == JobStatus.SCHEDULED)
        others = [j for j in day_jobs if j.status != JobStatus.SCHEDULED]

        if len(scheduled) < 2:
            if day_jobs:
                summary.days_skipped += 1
            next_order = max((j.order or 0 for j in day_jobs), default=0)
            appended = []
            for job in others:
                if job.order is None:
                    next_order += 1
                    appended.append(copy_job(job, order=next_order))
            return appended

        stops = [
            RouteStop(id=j.id, address=addresses.get(j.customer_id, ""), order=j.order)
            for j in scheduled
        ]
        async with semaphore:
            try:
                route = await self.route_provider.optimize_route(starting_address, stops)
            except Exception as e:
                logger.warning(f"Route optimization failed for {day}: {e}")
                route = None

        if route is None or not route.jobs:
            summary.days_failed += 1
            return []

        by_id = {j.id: j for j in scheduled}
        visiting = [by_id[s.id] for s in sorted(route.jobs, key=lambda s: s.order or 0) if s.id in by_id]
        seen = {j.id for j in visiting}
        visiting += [j for j in scheduled if j.id not in seen]

        legs = {(s.from_address, s.to_address): s.duration_minutes for s in route.segments}
        if self.estimator is not None:
            for s in route.segments:
                self.estimator.store(s.from_address, s.to_address, DriveTime.from_minutes(s.duration_minutes))
        minutes = float(self.timing_store.get(day).start_hour * 60)
        planned = []
        for position, job in enumerate(visiting):
            if position > 0:
                leg = legs.get((
                    addresses.get(visiting[position - 1].customer_id, ""),
                    addresses.get(job.customer_id, "")
                ))
                if leg is None:
                    leg = self.config.schedule.fallback_leg_minutes
                minutes += self.config.schedule.service_minutes + leg
            planned.append(copy_job(job, order=position + 1, scheduled_time=format_hhmm(round(minutes))))

        # Non-scheduled jobs stay after the route block
        block = len(visiting)
        next_order = max([block] + [j.order for j in others if j.order is not None and j.order > block])
        for job in others:
            if job.order is None or job.order <= block:
                next_order += 1
                planned.append(copy_job(job, order=next_order))

        summary.days_optimized += 1
        originals = {j.id: j for j in day_jobs}
        return [
            job for job in planned
            if (job.order, job.scheduled_time) != (originals[job.id].order, originals[job.id].scheduled_time)
        ]

    def detect_changes(self, jobs: List[Job]) -> bool:
        """
        Compare the current job orders with the last optimized snapshot.

        Only jobs captured in the snapshot and still present count; jobs
        created after the pass are not drift.

        Returns:
            True when the jobs drifted and the orchestrator went back to idle
        """
        if self.state != OptimizationStatus.OPTIMIZED:
            return False

        current = {job.id: job.order for job in jobs}
        drifted = [
            job_id for job_id, order in self.snapshot.items()
            if job_id in current and current[job_id] != order
        ]
        if not drifted:
            return False

        logger.info(f"{len(drifted)} jobs changed order since the last optimization")
        self._set_state(OptimizationStatus.IDLE)
        if self.on_changes_detected is not None:
            self.on_changes_detected()
        return True
