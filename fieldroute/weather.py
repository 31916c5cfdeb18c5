"""
Weather classification for job scheduling.
Turns hourly forecast samples into bad / good / partial day verdicts.
"""

import logging
from typing import List, Optional, Sequence

from .models import (
    DayClassification, DayCondition, HourlyForecast, PartialType, WeatherDay
)
from .schemas import AppConfig


logger = logging.getLogger(__name__)

PREVIOUS_NIGHT_RAIN = "previousNightRain"


class WeatherClassifier:
    """Classifies forecast days from their hourly samples."""

    def __init__(self, config: AppConfig):
        """Initialize with configuration."""
        self.config = config
        self.weather = config.weather

    def is_severe(self, sample: HourlyForecast) -> bool:
        """True if the description mentions thunder, heavy rain or storms."""
        text = (sample.description or "").lower()
        return any(token in text for token in self.weather.severe_tokens)

    def is_bad_sample(self, sample: HourlyForecast) -> bool:
        """A sample is bad when it rains past the threshold or is severe."""
        return (sample.rain_mm or 0.0) > self.weather.rain_threshold_mm or self.is_severe(sample)

    def classify(
        self,
        day: WeatherDay,
        previous_day: Optional[WeatherDay] = None
    ) -> DayClassification:
        """
        Classify a single forecast day.

        Args:
            day: The day to classify
            previous_day: The calendar day before, used for the wet-grass rule

        Returns:
            DayClassification (UNCLASSIFIED when there is no hourly data)
        """
        try:
            return self._classify(day, previous_day)
        except Exception as e:
            logger.warning(f"Could not classify {getattr(day, 'date', '?')}: {e}")
            return DayClassification(
                date=getattr(day, "date", ""),
                condition=DayCondition.UNCLASSIFIED
            )

    def classify_window(self, days: Sequence[WeatherDay]) -> List[DayClassification]:
        """Classify consecutive days, feeding each one its predecessor."""
        results = []
        previous = None
        for day in days:
            results.append(self.classify(day, previous))
            previous = day
        return results

    def _classify(
        self,
        day: WeatherDay,
        previous_day: Optional[WeatherDay]
    ) -> DayClassification:
        samples = list(day.hourly or [])
        if not samples:
            return DayClassification(date=day.date, condition=DayCondition.UNCLASSIFIED)

        flags = [self.is_bad_sample(s) for s in samples]
        bad_fraction = sum(flags) / len(flags)
        good_fraction = 1.0 - bad_fraction
        threshold = self.weather.bad_fraction

        if bad_fraction >= threshold:
            return DayClassification(
                date=day.date,
                condition=DayCondition.BAD,
                severity=self._severity(samples),
                bad_fraction=bad_fraction
            )

        result = DayClassification(
            date=day.date,
            condition=DayCondition.GOOD,
            bad_fraction=bad_fraction
        )
        if good_fraction < threshold:
            result.condition = DayCondition.PARTIAL
            if flags[0]:
                # Morning rain, clears later
                clear_hour = next(s.hour24 for s, bad in zip(samples, flags) if not bad)
                result.partial_type = PartialType.DELAY
                result.safe_start_hour = min(clear_hour + 1, self.weather.latest_safe_start_hour)
            else:
                # Clear morning, rain moves in
                first_bad = flags.index(True)
                result.partial_type = PartialType.START_EARLY
                result.last_good_hour = samples[first_bad - 1].hour24

        if previous_day is not None and self._rained_previous_night(previous_day):
            # Wet grass: hold the start even if the day itself looks fine
            result.condition = DayCondition.PARTIAL
            result.partial_type = PartialType.DELAY
            result.safe_start_hour = max(result.safe_start_hour or 0, self.weather.wet_grass_start_hour)
            result.tag = PREVIOUS_NIGHT_RAIN

        return result

    def _severity(self, samples: List[HourlyForecast]) -> str:
        heavy = any(
            (s.rain_mm or 0.0) > self.weather.heavy_rain_mm
            or "thunder" in (s.description or "").lower()
            for s in samples
        )
        return "heavy" if heavy else "moderate"

    def _rained_previous_night(self, previous_day: WeatherDay) -> bool:
        for s in previous_day.hourly or []:
            if s.hour24 < self.weather.previous_night_from_hour:
                continue
            if (s.rain_mm or 0.0) > self.weather.previous_night_rain_mm or self.is_severe(s):
                return True
        return False
