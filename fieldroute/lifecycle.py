"""
Job lifecycle: auto-creation from customer cadence, start, completion,
rescheduling and day-start changes.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, List, Optional, Set, Tuple

from .distance import DriveTimeEstimator
from .models import (
    Customer, CustomerStore, Frequency, Job, JobStatus, JobStore,
    copy_customer, copy_job
)
from .repo import is_duplicate_key_error
from .schemas import AppConfig
from .slots import DayTimingStore, TimeSlotAllocator
from .util.time_utils import add_days, add_months, elapsed_minutes, format_hhmm, parse_hhmm_or_none


logger = logging.getLogger(__name__)

FREQUENCY_DAYS = {
    Frequency.WEEKLY: 7,
    Frequency.BIWEEKLY: 14,
}


def next_cut_date(last_cut: str, frequency: Frequency) -> str:
    """Next service date after `last_cut` for the customer's cadence."""
    if frequency == Frequency.MONTHLY:
        return add_months(last_cut, 1)
    return add_days(last_cut, FREQUENCY_DAYS[Frequency(frequency)])


def max_order_on(jobs: List[Job], day: str) -> int:
    return max((j.order or 0 for j in jobs if j.date == day), default=0)


@dataclass
class EnsureJobsResult:
    """Counts from one auto-creation pass."""
    created: int = 0
    duplicates: int = 0
    errors: int = 0
    skipped: int = 0


@dataclass
class CompletionResult:
    """Completed job plus the customer and follow-on job it produced."""
    job: Job
    customer: Optional[Customer] = None
    follow_on: Optional[Job] = None


class JobLifecycle:
    """Creates and mutates jobs against the job and customer stores."""

    def __init__(
        self,
        config: AppConfig,
        job_store: JobStore,
        customer_store: CustomerStore,
        allocator: Optional[TimeSlotAllocator] = None,
        timing_store: Optional[DayTimingStore] = None,
        estimator: Optional[DriveTimeEstimator] = None
    ):
        self.config = config
        self.job_store = job_store
        self.customer_store = customer_store
        self.allocator = allocator or TimeSlotAllocator(config)
        self.timing_store = timing_store or DayTimingStore(config)
        self.estimator = estimator
        self._in_flight: Set[Tuple[str, str]] = set()

    async def ensure_jobs(
        self,
        customers: Optional[List[Customer]] = None,
        today: Optional[str] = None,
        horizon_days: Optional[int] = None
    ) -> EnsureJobsResult:
        """
        Create the missing job for every customer whose next cut date falls
        inside [today, today + horizon].

        Safe to call concurrently: a (customer, date) pair already being
        created is skipped, and a uniqueness violation from the store counts
        as a duplicate rather than an error.
        """
        today = today or date.today().isoformat()
        horizon = self.config.schedule.horizon_days if horizon_days is None else horizon_days
        last_day = add_days(today, horizon)

        if customers is None:
            customers = await asyncio.to_thread(self.customer_store.fetch_customers)
        existing = await asyncio.to_thread(self.job_store.fetch_jobs)
        existing_keys = {(j.customer_id, j.date) for j in existing}

        result = EnsureJobsResult()
        next_order: Dict[str, int] = {}
        claimed: List[Tuple[str, str]] = []
        new_jobs: List[Job] = []

        for customer in customers:
            cut = customer.next_cut_date
            if not cut or not today <= cut <= last_day:
                continue
            key = (customer.id, cut)
            if key in existing_keys or key in self._in_flight:
                result.skipped += 1
                continue

            self._in_flight.add(key)
            claimed.append(key)
            order = next_order.get(cut, max_order_on(existing, cut)) + 1
            next_order[cut] = order
            new_jobs.append(Job(
                customer_id=customer.id,
                date=cut,
                status=JobStatus.SCHEDULED,
                order=order
            ))

        if not new_jobs:
            return result

        logger.info(f"Auto-creating {len(new_jobs)} jobs up to {last_day}")
        try:
            await asyncio.gather(*(self._create(job, result) for job in new_jobs))
        finally:
            for key in claimed:
                self._in_flight.discard(key)

        logger.info(f"Created: {result.created}, duplicates: {result.duplicates}, errors: {result.errors}")
        return result

    async def _create(self, job: Job, result: EnsureJobsResult) -> None:
        try:
            await asyncio.to_thread(self.job_store.add_job, job)
            result.created += 1
        except Exception as e:
            if is_duplicate_key_error(e):
                logger.debug(f"Job for {job.customer_id} on {job.date} already exists")
                result.duplicates += 1
            else:
                logger.error(f"Failed to create job for {job.customer_id} on {job.date}: {e}")
                result.errors += 1

    def _get_job(self, job_id: str) -> Job:
        for job in self.job_store.fetch_jobs():
            if job.id == job_id:
                return job
        raise LookupError(f"Job {job_id} not found")

    def _get_customer(self, customer_id: str) -> Optional[Customer]:
        for customer in self.customer_store.fetch_customers():
            if customer.id == customer_id:
                return customer
        return None

    def start_job(self, job_id: str, now: Optional[datetime] = None) -> Job:
        """Mark a job in progress and stamp its start time."""
        job = self._get_job(job_id)
        started = copy_job(job, status=JobStatus.IN_PROGRESS, start_time=now or datetime.now())
        return self.job_store.update_job(started)

    def elapsed_minutes(self, job: Job, now: Optional[datetime] = None) -> int:
        """Minutes since the job started; stops counting once it has ended."""
        if job.start_time is None:
            return 0
        until = job.end_time if job.end_time is not None else (now or datetime.now())
        return elapsed_minutes(job.start_time, until)

    def complete_job(
        self,
        job_id: str,
        total_minutes: Optional[int] = None,
        notes: Optional[str] = None,
        drive_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
        starting_address: Optional[str] = None
    ) -> CompletionResult:
        """
        Complete a job, advance the customer's cut dates and create the
        follow-on job for the next cut date if none exists.
        """
        now = now or datetime.now()
        jobs = self.job_store.fetch_jobs()
        job = next((j for j in jobs if j.id == job_id), None)
        if job is None:
            raise LookupError(f"Job {job_id} not found")

        if total_minutes is None:
            total_minutes = elapsed_minutes(job.start_time, now) if job.start_time else 0
        if drive_minutes is None:
            drive_minutes = self._drive_minutes_to(job, jobs, starting_address)

        completed = self.job_store.update_job(copy_job(
            job,
            status=JobStatus.COMPLETED,
            end_time=now,
            total_time=total_minutes,
            drive_time=drive_minutes,
            notes=notes or job.notes
        ))
        outcome = CompletionResult(job=completed)

        customer = self._get_customer(job.customer_id)
        if customer is None:
            logger.warning(f"Completed job {job_id} has no customer {job.customer_id}")
            return outcome

        next_date = next_cut_date(job.date, customer.frequency)
        outcome.customer = self.customer_store.update_customer(
            copy_customer(customer, last_cut_date=job.date, next_cut_date=next_date)
        )

        if any(j.customer_id == customer.id and j.date == next_date for j in jobs):
            return outcome

        try:
            outcome.follow_on = self.job_store.add_job(Job(
                customer_id=customer.id,
                date=next_date,
                status=JobStatus.SCHEDULED,
                order=max_order_on(jobs, next_date) + 1
            ))
            logger.info(f"Created next job for {customer.name or customer.id} on {next_date}")
        except Exception as e:
            if not is_duplicate_key_error(e):
                logger.error(f"Failed to create next job for {customer.id}: {e}")
        return outcome

    def _drive_minutes_to(self, job: Job, jobs: List[Job], starting_address: Optional[str]) -> Optional[int]:
        """Estimated drive from the previous stop of the day (or the start address)."""
        if self.estimator is None:
            return job.drive_time

        # Route order regardless of status; earlier stops are usually completed already
        day_jobs = sorted(
            (j for j in jobs if j.date == job.date),
            key=lambda j: (j.order is None, j.order or 0)
        )
        position = next(i for i, j in enumerate(day_jobs) if j.id == job.id)
        addresses = {c.id: c.address for c in self.customer_store.fetch_customers()}
        destination = addresses.get(job.customer_id)
        origin = addresses.get(day_jobs[position - 1].customer_id) if position > 0 else starting_address
        if not origin or not destination:
            return job.drive_time
        return self.estimator.get(origin, destination).duration_minutes

    def reschedule_job(self, job_id: str, new_date: str, time_slot: Optional[int] = None) -> Job:
        """
        Move a job to another date, optionally into a specific slot.

        The job loses its order so it is appended on the new day. A customer
        whose next cut date was the job's old date follows the job.
        """
        job = self._get_job(job_id)
        scheduled_time = None
        if time_slot is not None:
            start = self.timing_store.get(new_date).start_hour
            scheduled_time = self.allocator.scheduled_time_for_slot(time_slot, start)

        moved = self.job_store.update_job(
            copy_job(job, date=new_date, scheduled_time=scheduled_time, order=None)
        )

        customer = self._get_customer(job.customer_id)
        if customer is not None and customer.next_cut_date == job.date:
            self.customer_store.update_customer(copy_customer(customer, next_cut_date=new_date))

        logger.info(f"Rescheduled job {job_id} from {job.date} to {new_date}")
        return moved

    def change_day_start(self, day: str, start_hour: int) -> List[Job]:
        """
        Set the day's start hour and lift earlier scheduled times to it.

        Returns:
            The jobs whose scheduled time was changed and persisted
        """
        self.timing_store.set(day, start_hour)
        start_minutes = start_hour * 60
        lifted = []

        for job in self.job_store.fetch_jobs():
            if job.date != day or job.status != JobStatus.SCHEDULED:
                continue
            minutes = parse_hhmm_or_none(job.scheduled_time)
            if minutes is None or minutes >= start_minutes:
                continue
            try:
                lifted.append(self.job_store.update_job(
                    copy_job(job, scheduled_time=format_hhmm(start_minutes))
                ))
            except Exception as e:
                logger.error(f"Failed to move job {job.id} to the new start time: {e}")

        if lifted:
            logger.info(f"Moved {len(lifted)} jobs on {day} to start at {format_hhmm(start_minutes)}")
        return lifted
