"""
Manual job reordering within a day or across days, with single-level undo.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .commands import ApplyResult, PersistOutcome, persist_and_reconcile
from .models import Job, JobStore, copy_job
from .schemas import AppConfig
from .slots import DayTimingStore, TimeSlotAllocator


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MoveJobCommand:
    """Move a job to `target_index` in the sorted job list of `target_date`."""
    job_id: str
    target_date: str
    target_index: int


@dataclass
class MoveRecord:
    """Everything needed to put a moved job back."""
    job_id: str
    from_date: str
    to_date: str
    time_slot: Optional[int]
    previous_scheduled_time: Optional[str]
    previous_order: Optional[int]
    recorded_at: float
    day_orders: Dict[str, Optional[int]] = field(default_factory=dict)  # source and destination days


def _replace(jobs: List[Job], changed: List[Job]) -> List[Job]:
    by_id: Dict[str, Job] = {job.id: job for job in changed}
    return [by_id.get(job.id, job) for job in jobs]


def _renumber(day_jobs: List[Job]) -> List[Job]:
    return [copy_job(job, order=position + 1) for position, job in enumerate(day_jobs)]


class UndoController:
    """Holds the most recent move for a short time so it can be reverted."""

    def __init__(
        self,
        config: AppConfig,
        job_store: JobStore,
        clock: Callable[[], float] = time.monotonic
    ):
        self.job_store = job_store
        self.window_seconds = config.undo.window_seconds
        self.clock = clock
        self.last: Optional[MoveRecord] = None

    def record(
        self,
        job: Job,
        to_date: str,
        time_slot: Optional[int] = None,
        day_orders: Optional[Dict[str, Optional[int]]] = None
    ) -> MoveRecord:
        """
        Remember `job` as it was before being moved; replaces any earlier record.

        `day_orders` holds the pre-move order of every job on the source and
        destination days so their numbering can be put back too.
        """
        self.last = MoveRecord(
            job_id=job.id,
            from_date=job.date,
            to_date=to_date,
            time_slot=time_slot,
            previous_scheduled_time=job.scheduled_time,
            previous_order=job.order,
            recorded_at=self.clock(),
            day_orders=dict(day_orders or {})
        )
        return self.last

    def can_undo(self) -> bool:
        if self.last is None:
            return False
        if self.clock() - self.last.recorded_at >= self.window_seconds:
            self.last = None
            return False
        return True

    def undo(self) -> Optional[PersistOutcome]:
        """
        Restore the moved job's date, scheduled time and order, and the
        numbering of the days it left and entered.

        Returns:
            PersistOutcome, or None when there is nothing to undo
        """
        if not self.can_undo():
            return None
        record = self.last
        self.last = None

        jobs = self.job_store.fetch_jobs()
        job = next((j for j in jobs if j.id == record.job_id), None)
        if job is None:
            logger.warning(f"Cannot undo move of missing job {record.job_id}")
            return None

        restored = [copy_job(
            job,
            date=record.from_date,
            scheduled_time=record.previous_scheduled_time,
            order=record.previous_order
        )]
        days = {record.from_date, record.to_date}
        for other in jobs:
            if other.id == record.job_id or other.id not in record.day_orders or other.date not in days:
                continue
            if other.order != record.day_orders[other.id]:
                restored.append(copy_job(other, order=record.day_orders[other.id]))

        outcome = persist_and_reconcile(
            self.job_store,
            ApplyResult(optimistic=_replace(jobs, restored), pending=restored)
        )
        logger.info(f"Undid move of job {record.job_id} back to {record.from_date}")
        return outcome


class ReorderController:
    """Computes and persists manual moves of jobs between positions and days."""

    def __init__(
        self,
        config: AppConfig,
        job_store: JobStore,
        allocator: Optional[TimeSlotAllocator] = None,
        timing_store: Optional[DayTimingStore] = None,
        undo: Optional[UndoController] = None
    ):
        self.config = config
        self.job_store = job_store
        self.allocator = allocator or TimeSlotAllocator(config)
        self.timing_store = timing_store or DayTimingStore(config)
        self.undo = undo or UndoController(config, job_store)

    def apply(self, command: MoveJobCommand, jobs: Optional[List[Job]] = None) -> Optional[ApplyResult]:
        """
        Compute the job list after the move without touching the store.

        Returns:
            ApplyResult, or None when the job is missing or would not move
        """
        if jobs is None:
            jobs = self.job_store.fetch_jobs()
        job = next((j for j in jobs if j.id == command.job_id), None)
        if job is None:
            logger.warning(f"Cannot move missing job {command.job_id}")
            return None

        if job.date == command.target_date:
            return self._apply_same_day(job, jobs, command.target_index)
        return self._apply_cross_day(job, jobs, command.target_date, command.target_index)

    def _apply_same_day(self, job: Job, jobs: List[Job], target_index: int) -> Optional[ApplyResult]:
        day_jobs = self.allocator.sort_jobs(j for j in jobs if j.date == job.date)
        source_index = next(i for i, j in enumerate(day_jobs) if j.id == job.id)
        if source_index == target_index:
            return None

        day_jobs.pop(source_index)
        day_jobs.insert(max(0, min(target_index, len(day_jobs))), job)
        renumbered = _renumber(day_jobs)
        changed = [new for new, old in zip(renumbered, day_jobs) if new.order != old.order]
        return ApplyResult(optimistic=_replace(jobs, renumbered), pending=changed)

    def _apply_cross_day(
        self,
        job: Job,
        jobs: List[Job],
        target_date: str,
        target_index: int
    ) -> ApplyResult:
        source = [j for j in self.allocator.sort_jobs(j for j in jobs if j.date == job.date) if j.id != job.id]
        destination = self.allocator.sort_jobs(j for j in jobs if j.date == target_date)
        destination.insert(max(0, min(target_index, len(destination))), copy_job(job, date=target_date))

        renumbered_source = _renumber(source)
        renumbered_destination = _renumber(destination)

        start = self.timing_store.get(target_date).start_hour
        slot = self.allocator.assign_slots(renumbered_destination, start)[job.id]
        scheduled_time = self.allocator.scheduled_time_for_slot(slot, start)
        renumbered_destination = [
            copy_job(j, scheduled_time=scheduled_time) if j.id == job.id else j
            for j in renumbered_destination
        ]

        originals = {j.id: j for j in jobs}
        changed = [
            j for j in renumbered_source + renumbered_destination
            if j.id == job.id or j.order != originals[j.id].order
        ]
        return ApplyResult(
            optimistic=_replace(jobs, renumbered_source + renumbered_destination),
            pending=changed
        )

    def move(self, command: MoveJobCommand) -> Optional[PersistOutcome]:
        """Apply, persist and reconcile a move, then make it undoable."""
        jobs = self.job_store.fetch_jobs()
        result = self.apply(command, jobs)
        if result is None:
            return None

        before = next(j for j in jobs if j.id == command.job_id)
        after = next(j for j in result.optimistic if j.id == command.job_id)
        start = self.timing_store.get(command.target_date).start_hour
        slot = self.allocator.assign_slots(
            [j for j in result.optimistic if j.date == command.target_date], start
        ).get(command.job_id)

        day_orders = {j.id: j.order for j in jobs if j.date in (before.date, command.target_date)}

        outcome = persist_and_reconcile(self.job_store, result)
        if outcome.ok:
            self.undo.record(before, to_date=after.date, time_slot=slot, day_orders=day_orders)
        logger.info(
            f"Moved job {command.job_id} to {command.target_date} position {command.target_index} "
            f"({outcome.succeeded} saved, {outcome.failed} failed)"
        )
        return outcome

    def move_within_day(self, job_id: str, date: str, target_index: int) -> Optional[PersistOutcome]:
        return self.move(MoveJobCommand(job_id=job_id, target_date=date, target_index=target_index))

    def move_to_day(self, job_id: str, target_date: str, target_index: int) -> Optional[PersistOutcome]:
        return self.move(MoveJobCommand(job_id=job_id, target_date=target_date, target_index=target_index))
