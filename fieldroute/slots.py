"""
Hourly slot allocation for a day's jobs and per-day timing overrides.
Slots are always derived from order/scheduled_time and never persisted.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .models import Job, JobStatus
from .schemas import AppConfig
from .util.time_utils import format_hhmm, hour_label, parse_hhmm_or_none


@dataclass
class DayTiming:
    """Working window for one day."""
    start_hour: int
    end_hour: int


class DayTimingStore:
    """Explicit per-date timing overrides (date -> start/end hour)."""

    def __init__(self, config: AppConfig):
        self.config = config
        self._overrides: Dict[str, DayTiming] = {}

    @property
    def default(self) -> DayTiming:
        return DayTiming(
            start_hour=self.config.schedule.day_start_hour,
            end_hour=self.config.schedule.day_end_hour
        )

    def get(self, date: str) -> DayTiming:
        """Override for the date, or the default window."""
        timing = self._overrides.get(date)
        if timing is None:
            return self.default
        return DayTiming(timing.start_hour, timing.end_hour)

    def set(self, date: str, start_hour: int, end_hour: Optional[int] = None) -> DayTiming:
        """Write an override; an omitted end hour keeps the current one."""
        if end_hour is None:
            end_hour = self.get(date).end_hour
        if end_hour <= start_hour:
            raise ValueError(f"End hour {end_hour} must be after start hour {start_hour}")
        self._overrides[date] = DayTiming(start_hour=start_hour, end_hour=end_hour)
        return self.get(date)

    def clear(self, date: str) -> None:
        self._overrides.pop(date, None)

    def has_end_override(self, date: str) -> bool:
        return self.get(date).end_hour != self.config.schedule.day_end_hour

    def snapshot(self) -> Dict[str, DayTiming]:
        return {d: DayTiming(t.start_hour, t.end_hour) for d, t in self._overrides.items()}


class TimeSlotAllocator:
    """Maps an ordered job list onto fixed hourly slots of the working day."""

    def __init__(self, config: AppConfig):
        """Initialize with configuration."""
        self.config = config
        self.epoch_hour = config.schedule.day_start_hour
        self.max_slot = config.schedule.max_slot

    def sort_jobs(self, jobs: Iterable[Job]) -> List[Job]:
        """
        Sort jobs into display/route order.

        Open jobs come before completed ones; within each group jobs with an
        order sort by it, then jobs with a scheduled time by that time, then
        input order.
        """
        indexed = list(enumerate(jobs))

        def sort_key(item):
            index, job = item
            minutes = parse_hhmm_or_none(job.scheduled_time)
            return (
                job.status == JobStatus.COMPLETED,
                job.order is None,
                job.order if job.order is not None else 0,
                minutes is None,
                minutes if minutes is not None else 0,
                index,
            )

        return [job for _, job in sorted(indexed, key=sort_key)]

    def slot_offset(self, start_override: Optional[int] = None) -> int:
        start = self.epoch_hour if start_override is None else start_override
        return max(0, start - self.epoch_hour)

    def clamp(self, slot: int) -> int:
        return max(0, min(slot, self.max_slot))

    def assign_slots(
        self,
        jobs: Iterable[Job],
        start_override: Optional[int] = None
    ) -> Dict[str, int]:
        """Slot index per job id for one day's jobs."""
        offset = self.slot_offset(start_override)
        return {
            job.id: self.clamp(position + offset)
            for position, job in enumerate(self.sort_jobs(jobs))
        }

    def hour_for_slot(self, slot: int, start_override: Optional[int] = None) -> int:
        # A slot before the day start is shown at the day start
        slot = max(self.clamp(slot), self.slot_offset(start_override))
        return self.epoch_hour + slot

    def label_for(self, slot: int, start_override: Optional[int] = None) -> str:
        """12-hour label such as '5 AM' for a slot index."""
        return hour_label(self.hour_for_slot(slot, start_override))

    def scheduled_time_for_slot(self, slot: int, start_override: Optional[int] = None) -> str:
        """24-hour 'H:00' time for a slot index."""
        return format_hhmm(self.hour_for_slot(slot, start_override) * 60)

    def labels(self, jobs: Iterable[Job], start_override: Optional[int] = None) -> Dict[str, str]:
        """Label per job id, recomputed from the current order."""
        return {
            job_id: self.label_for(slot, start_override)
            for job_id, slot in self.assign_slots(jobs, start_override).items()
        }
