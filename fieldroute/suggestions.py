"""
Weather-driven scheduling suggestions.

Suggestions are recomputed from scratch on every pass; nothing is
remembered between passes, so an accepted suggestion disappears only
because the jobs or day timings it pointed at have changed.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

from .lifecycle import JobLifecycle
from .models import (
    DayClassification, DayCondition, Job, JobStatus, MoveSuggestion, PartialType,
    StartTimeSuggestion, SuggestionSet, WeatherDay
)
from .schemas import AppConfig
from .slots import DayTiming
from .util.time_utils import day_name, weekday
from .weather import PREVIOUS_NIGHT_RAIN, WeatherClassifier


logger = logging.getLogger(__name__)

Suggestion = Union[MoveSuggestion, StartTimeSuggestion]


@dataclass
class AcceptAllResult:
    """Outcome of applying every pending suggestion."""
    applied: int = 0
    failed: int = 0


class SuggestionEngine:
    """Turns a forecast window plus the job calendar into move and timing suggestions."""

    def __init__(
        self,
        config: AppConfig,
        lifecycle: JobLifecycle,
        classifier: Optional[WeatherClassifier] = None
    ):
        """Initialize with configuration and the lifecycle used to apply moves."""
        self.config = config
        self.lifecycle = lifecycle
        self.timing_store = lifecycle.timing_store
        self.allocator = lifecycle.allocator
        self.classifier = classifier or WeatherClassifier(config)
        self.pending: Dict[str, Suggestion] = {}

    def generate(
        self,
        forecast: Sequence[WeatherDay],
        jobs_by_date: Dict[str, List[Job]],
        timing_overrides: Optional[Dict[str, DayTiming]] = None
    ) -> SuggestionSet:
        """
        Build suggestions for the first days of the forecast window.

        Args:
            forecast: Consecutive forecast days, earliest first
            jobs_by_date: Jobs grouped by date
            timing_overrides: Per-date working windows; defaults to the timing store

        Returns:
            SuggestionSet (empty on any internal error)
        """
        try:
            result = self._generate(forecast, jobs_by_date, timing_overrides)
        except Exception as e:
            logger.error(f"Suggestion generation failed: {e}")
            result = SuggestionSet()

        self.pending = {s.key: s for s in result.move_suggestions + result.start_time_suggestions}
        return result

    def _generate(
        self,
        forecast: Sequence[WeatherDay],
        jobs_by_date: Dict[str, List[Job]],
        timing_overrides: Optional[Dict[str, DayTiming]]
    ) -> SuggestionSet:
        if timing_overrides is None:
            timing_overrides = self.timing_store.snapshot()
        window = list(forecast)[:self.config.suggestions.window_days]
        classifications = self.classifier.classify_window(window)

        scheduled = {
            day.date: [j for j in jobs_by_date.get(day.date, []) if j.status == JobStatus.SCHEDULED]
            for day in window
        }
        workload = {d: len(jobs) for d, jobs in scheduled.items()}
        good_days = [c.date for c in classifications if c.condition == DayCondition.GOOD]

        result = SuggestionSet()
        for verdict in classifications:
            day_jobs = scheduled.get(verdict.date, [])
            timing = timing_overrides.get(verdict.date, self.timing_store.default)

            if verdict.condition == DayCondition.BAD:
                if day_jobs:
                    move = self._move_all(verdict, day_jobs, good_days, workload)
                    if move is not None:
                        result.move_suggestions.append(move)
            elif verdict.condition == DayCondition.PARTIAL:
                self._partial_day(verdict, day_jobs, timing, good_days, workload, result)

        logger.debug(
            f"Generated {len(result.move_suggestions)} move and "
            f"{len(result.start_time_suggestions)} start-time suggestions"
        )
        return result

    def _pick_target(
        self,
        source: str,
        good_days: List[str],
        workload: Dict[str, int],
        prefer_weekdays: bool
    ) -> Optional[str]:
        """Least busy good day, later days first; preferred weekdays win when allowed."""
        candidates = [d for d in good_days if d > source] or [d for d in good_days if d != source]
        if not candidates:
            return None

        if prefer_weekdays:
            preferred = [d for d in candidates if weekday(d) in self.config.suggestions.preferred_weekdays]
            if preferred:
                candidates = preferred

        return min(candidates, key=lambda d: (workload.get(d, 0), d))

    def _describe_target(self, target: str, workload: Dict[str, int]) -> str:
        count = workload.get(target, 0)
        if count == 0:
            return f"{day_name(target)} is free"
        return f"{day_name(target)} has a light schedule ({count} jobs)"

    def _move_all(
        self,
        verdict: DayClassification,
        day_jobs: List[Job],
        good_days: List[str],
        workload: Dict[str, int]
    ) -> Optional[MoveSuggestion]:
        target = self._pick_target(verdict.date, good_days, workload, prefer_weekdays=True)
        if target is None:
            return None
        ordered = self.allocator.sort_jobs(day_jobs)
        return MoveSuggestion(
            job_ids=tuple(j.id for j in ordered),
            current_date=verdict.date,
            suggested_date=target,
            reason=f"{verdict.severity.capitalize()} rain on {day_name(verdict.date)}; "
                   f"{self._describe_target(target, workload)}",
            severity=verdict.severity or "moderate"
        )

    def _partial_day(
        self,
        verdict: DayClassification,
        day_jobs: List[Job],
        timing: DayTiming,
        good_days: List[str],
        workload: Dict[str, int],
        result: SuggestionSet
    ) -> None:
        default_end = self.config.schedule.day_end_hour

        if verdict.partial_type == PartialType.DELAY:
            safe_start = verdict.safe_start_hour
            if timing.start_hour < safe_start:
                if verdict.tag == PREVIOUS_NIGHT_RAIN:
                    reason = f"Rain the night before; wet grass until {safe_start}:00"
                else:
                    reason = f"Morning rain on {day_name(verdict.date)} clears by {safe_start}:00"
                result.start_time_suggestions.append(StartTimeSuggestion(
                    date=verdict.date,
                    current_start=timing.start_hour,
                    suggested_start=safe_start,
                    reason=reason,
                    type=PartialType.DELAY
                ))
            capacity = timing.end_hour - safe_start
        else:
            last_good = verdict.last_good_hour
            early = self.config.suggestions.start_early_hour
            if timing.end_hour == default_end and last_good < timing.end_hour:
                result.start_time_suggestions.append(StartTimeSuggestion(
                    date=verdict.date,
                    current_start=timing.start_hour,
                    suggested_start=early,
                    suggested_end=last_good,
                    reason=f"Rain moves in on {day_name(verdict.date)} after {last_good}:00; start early",
                    type=PartialType.START_EARLY
                ))
            capacity = last_good - early

        overflow = self.allocator.sort_jobs(day_jobs)[max(0, capacity):]
        if not overflow:
            return

        target = self._pick_target(verdict.date, good_days, workload, prefer_weekdays=False)
        if target is None:
            return
        result.move_suggestions.append(MoveSuggestion(
            job_ids=tuple(j.id for j in overflow),
            current_date=verdict.date,
            suggested_date=target,
            reason=f"Only room for {max(0, capacity)} jobs on {day_name(verdict.date)}; "
                   f"{self._describe_target(target, workload)}",
            severity="partial"
        ))

    def accept_move(self, suggestion: MoveSuggestion, target_date: Optional[str] = None) -> int:
        """
        Reschedule every job in the suggestion.

        Returns:
            Number of jobs moved
        """
        target = target_date or suggestion.suggested_date
        for job_id in suggestion.job_ids:
            self.lifecycle.reschedule_job(job_id, target)
        self.pending.pop(suggestion.key, None)
        logger.info(f"Moved {len(suggestion.job_ids)} jobs from {suggestion.current_date} to {target}")
        return len(suggestion.job_ids)

    def accept_start_time(self, date: str, new_start: int, new_end: Optional[int] = None) -> DayTiming:
        """Write the day's timing override and lift jobs scheduled before the new start."""
        if new_end is not None:
            self.timing_store.set(date, new_start, new_end)
        self.lifecycle.change_day_start(date, new_start)
        self.pending.pop(f"time:{date}", None)
        return self.timing_store.get(date)

    def accept(self, suggestion: Suggestion) -> None:
        if isinstance(suggestion, MoveSuggestion):
            self.accept_move(suggestion)
        else:
            self.accept_start_time(suggestion.date, suggestion.suggested_start, suggestion.suggested_end)

    def accept_all(self) -> AcceptAllResult:
        """Apply every pending suggestion in turn; failures are counted, not raised."""
        result = AcceptAllResult()
        for suggestion in list(self.pending.values()):
            try:
                self.accept(suggestion)
                result.applied += 1
            except Exception as e:
                logger.error(f"Failed to apply suggestion {suggestion.key}: {e}")
                result.failed += 1
        logger.info(f"Applied {result.applied} suggestions, {result.failed} failed")
        return result
