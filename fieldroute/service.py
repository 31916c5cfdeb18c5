"""
Main service layer for weather-aware scheduling.
Wires configuration, stores and providers into the scheduling components.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import yaml

from .distance import DriveTimeEstimator, GoogleMapsClient
from .integrations.open_meteo import OpenMeteoClient
from .lifecycle import EnsureJobsResult, JobLifecycle
from .models import (
    CustomerStore, DriveTime, Job, JobStore, RouteProvider, SuggestionSet,
    WeatherProvider, jobs_by_date
)
from .optimizer import OptimizationStatus, OptimizationSummary, RouteOptimizationOrchestrator
from .reorder import ReorderController, UndoController
from .repo import DatabaseRepository
from .schemas import AppConfig, Settings
from .slots import DayTimingStore, TimeSlotAllocator
from .solver_greedy import GoogleRouteOptimizer
from .suggestions import SuggestionEngine
from .weather import WeatherClassifier

logger = logging.getLogger(__name__)


@dataclass
class ScheduledStop:
    """One row of a day's schedule as shown to the user."""
    job: Job
    slot: int
    label: str
    drive_time: Optional[DriveTime] = None


class SchedulingService:
    """Facade over the scheduling engine for a presentation layer."""

    def __init__(
        self,
        config_path: str = "config/params.yaml",
        config: Optional[AppConfig] = None,
        settings: Optional[Settings] = None,
        job_store: Optional[JobStore] = None,
        customer_store: Optional[CustomerStore] = None,
        weather_provider: Optional[WeatherProvider] = None,
        route_provider: Optional[RouteProvider] = None,
        clock: Callable[[], float] = time.monotonic,
        on_status_change: Optional[Callable[[OptimizationStatus], None]] = None,
        on_changes_detected: Optional[Callable[[], None]] = None
    ):
        """Initialize service with configuration."""
        self.config = config or self._load_config(config_path)
        self.settings = settings or Settings()

        # Setup logging
        self._setup_logging()

        # Stores default to the SQL repository
        self.repo = None
        if job_store is None or customer_store is None:
            self.repo = DatabaseRepository(self.config)
            self.repo.create_tables()
        self.job_store = job_store or self.repo
        self.customer_store = customer_store or self.repo

        # Providers
        self.maps_client = None
        if route_provider is None:
            self.maps_client = GoogleMapsClient(self.config, self.settings)
            route_provider = GoogleRouteOptimizer(self.config, self.maps_client)
        self.route_provider = route_provider
        self.weather_provider = weather_provider or OpenMeteoClient(self.config)

        # Components
        self.timing_store = DayTimingStore(self.config)
        self.allocator = TimeSlotAllocator(self.config)
        self.estimator = DriveTimeEstimator(self.config, route_provider)
        self.classifier = WeatherClassifier(self.config)
        self.lifecycle = JobLifecycle(
            self.config, self.job_store, self.customer_store,
            self.allocator, self.timing_store, self.estimator
        )
        self.suggestions = SuggestionEngine(self.config, self.lifecycle, self.classifier)
        self.optimizer = RouteOptimizationOrchestrator(
            self.config, self.job_store, self.customer_store, route_provider,
            estimator=self.estimator,
            timing_store=self.timing_store,
            allocator=self.allocator,
            on_status_change=on_status_change,
            on_changes_detected=on_changes_detected
        )
        self.undo = UndoController(self.config, self.job_store, clock=clock)
        self.reorder = ReorderController(
            self.config, self.job_store, self.allocator, self.timing_store, self.undo
        )

    def _load_config(self, config_path: str) -> AppConfig:
        """Load configuration from YAML file."""
        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}
            return AppConfig(**config_data)
        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise

    def _setup_logging(self) -> None:
        """Setup logging configuration."""
        logging.basicConfig(
            level=getattr(logging, self.config.logging.level),
            format=self.config.logging.format
        )

    def apply_overrides(self, overrides: Dict[str, Any]) -> None:
        """Apply dot-path overrides onto the loaded config."""
        if not overrides:
            return
        def set_dot(obj, path, val):
            parts = path.split('.')
            cur = obj
            for p in parts[:-1]:
                cur = getattr(cur, p)
            setattr(cur, parts[-1], val)
        for k, v in overrides.items():
            try:
                set_dot(self.config, k, v)
            except Exception as e:
                logger.warning(f"Override failed for {k}: {e}")

    async def refresh_suggestions(self, location: str) -> SuggestionSet:
        """
        Fetch the forecast for `location` and recompute suggestions.

        Weather failures are not fatal: the result is simply empty.
        """
        try:
            coords = await self.weather_provider.get_coordinates_from_address(location)
            forecast = await self.weather_provider.get_weather_data(coords) if coords else []
        except Exception as e:
            logger.warning(f"Weather unavailable for '{location}': {e}")
            forecast = []

        if not forecast:
            self.suggestions.pending = {}
            return SuggestionSet()

        jobs = await asyncio.to_thread(self.job_store.fetch_jobs)
        return self.suggestions.generate(forecast, jobs_by_date(jobs), self.timing_store.snapshot())

    async def ensure_jobs(self, today: Optional[str] = None) -> EnsureJobsResult:
        """Create jobs for customers due within the horizon."""
        return await self.lifecycle.ensure_jobs(today=today)

    async def optimize_all(self, starting_address: str, today: Optional[str] = None) -> OptimizationSummary:
        return await self.optimizer.optimize_all(starting_address, today)

    def detect_changes(self) -> bool:
        """Check the stored jobs for drift from the last optimized order."""
        return self.optimizer.detect_changes(self.job_store.fetch_jobs())

    def day_schedule(self, date: str, starting_address: Optional[str] = None) -> List[ScheduledStop]:
        """
        Jobs of a day in slot order with labels and drive time from the previous stop.
        Drive times come from the cache or the offline estimate.
        """
        jobs = [j for j in self.job_store.fetch_jobs() if j.date == date]
        addresses = {c.id: c.address for c in self.customer_store.fetch_customers()}
        start = self.timing_store.get(date).start_hour
        slots = self.allocator.assign_slots(jobs, start)

        stops = []
        previous = starting_address
        for job in self.allocator.sort_jobs(jobs):
            address = addresses.get(job.customer_id)
            drive = self.estimator.get(previous, address) if previous and address else None
            stops.append(ScheduledStop(
                job=job,
                slot=slots[job.id],
                label=self.allocator.label_for(slots[job.id], start),
                drive_time=drive
            ))
            previous = address or previous
        return stops

    async def refresh_drive_times(
        self,
        date: str,
        starting_address: Optional[str] = None,
        on_complete: Optional[Callable[[], None]] = None
    ) -> Dict[str, DriveTime]:
        """Resolve the day's consecutive address pairs through the distance provider."""
        jobs = await asyncio.to_thread(self.job_store.fetch_jobs)
        customers = await asyncio.to_thread(self.customer_store.fetch_customers)
        addresses = {c.id: c.address for c in customers}

        route = [starting_address] if starting_address else []
        route += [
            addresses[j.customer_id]
            for j in self.allocator.sort_jobs(j for j in jobs if j.date == date)
            if j.customer_id in addresses
        ]
        pairs = [(a, b) for a, b in zip(route, route[1:]) if a != b]
        return await self.estimator.resolve_pairs(pairs, on_complete)

    def get_config(self) -> Dict[str, Any]:
        """Get current configuration (non-secret)."""
        return self.config.model_dump()

    def health_check(self) -> Dict[str, Any]:
        """Perform health check on all components."""
        return {
            "status": "healthy",
            "database_connected": self.repo.health_check() if self.repo else None,
            "google_api_configured": self.settings.google_maps_api_key is not None,
            "optimization_state": self.optimizer.state.value,
            "timestamp": datetime.now().isoformat()
        }

    async def close(self) -> None:
        """Clean up resources."""
        if self.maps_client is not None:
            await self.maps_client.close()
        if isinstance(self.weather_provider, OpenMeteoClient):
            await self.weather_provider.close()
