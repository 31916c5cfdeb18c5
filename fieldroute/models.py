"""
Core data models for the field route scheduler.
Uses SQLModel for persisted records and dataclasses for derived values.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class JobStatus(str, Enum):
    """Job lifecycle states."""
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class Frequency(str, Enum):
    """Customer service cadence."""
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class DayCondition(str, Enum):
    """Weather classification of a forecast day."""
    BAD = "bad"
    GOOD = "good"
    PARTIAL = "partial"
    UNCLASSIFIED = "unclassified"


class PartialType(str, Enum):
    """How a partial day should be worked around."""
    DELAY = "delay"
    START_EARLY = "start-early"


def _new_id() -> str:
    return uuid4().hex


# Database Models (SQLModel)
class Customer(SQLModel, table=True):
    """Recurring service customer."""
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str = Field(default="")
    address: str
    price: float = Field(default=0.0, ge=0)
    square_footage: int = Field(default=0, ge=0)
    frequency: Frequency = Field(default=Frequency.WEEKLY)
    next_cut_date: Optional[str] = Field(default=None, index=True)  # YYYY-MM-DD
    last_cut_date: Optional[str] = Field(default=None)  # YYYY-MM-DD
    is_hilly: bool = Field(default=False)
    has_fencing: bool = Field(default=False)
    has_obstacles: bool = Field(default=False)


class Job(SQLModel, table=True):
    """A single visit to a customer on a calendar day."""
    __table_args__ = (
        UniqueConstraint("customer_id", "date", name="uq_job_customer_date"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    customer_id: str = Field(index=True)
    date: str = Field(index=True)  # YYYY-MM-DD, local calendar day
    status: JobStatus = Field(default=JobStatus.SCHEDULED)
    order: Optional[int] = Field(default=None)  # None = unordered, appended at end
    scheduled_time: Optional[str] = Field(default=None)  # "H:MM" 24h
    start_time: Optional[datetime] = Field(default=None)
    end_time: Optional[datetime] = Field(default=None)
    total_time: Optional[int] = Field(default=None, ge=0)  # minutes
    drive_time: Optional[int] = Field(default=None, ge=0)  # minutes
    notes: Optional[str] = Field(default=None)


def copy_job(job: Job, **changes) -> Job:
    """Detached copy of a job with field overrides applied."""
    data = job.model_dump()
    data.update(changes)
    return Job(**data)


def copy_customer(customer: Customer, **changes) -> Customer:
    """Detached copy of a customer with field overrides applied."""
    data = customer.model_dump()
    data.update(changes)
    return Customer(**data)


# Weather
@dataclass
class Coordinates:
    """Geographic coordinates."""
    lat: float
    lon: float
    name: Optional[str] = None


@dataclass
class HourlyForecast:
    """One forecast sample."""
    hour24: int
    description: str
    rain_mm: float


@dataclass
class WeatherDay:
    """Forecast for one calendar day."""
    date: str  # YYYY-MM-DD
    precipitation_chance: int = 0  # 0-100
    hourly: List[HourlyForecast] = field(default_factory=list)


@dataclass
class DayClassification:
    """Derived classification of a forecast day. Never persisted."""
    date: str
    condition: DayCondition
    partial_type: Optional[PartialType] = None
    severity: Optional[str] = None  # "heavy" | "moderate" for bad days
    safe_start_hour: Optional[int] = None
    last_good_hour: Optional[int] = None
    tag: Optional[str] = None
    bad_fraction: float = 0.0


# Suggestions
@dataclass(frozen=True)
class MoveSuggestion:
    """Proposed reschedule of one or more jobs to a better day."""
    job_ids: Tuple[str, ...]
    current_date: str
    suggested_date: str
    reason: str
    severity: str

    @property
    def key(self) -> str:
        return f"move:{self.current_date}:{','.join(self.job_ids)}"


@dataclass(frozen=True)
class StartTimeSuggestion:
    """Proposed change to a day's timing override."""
    date: str
    current_start: int
    suggested_start: int
    reason: str
    type: PartialType
    suggested_end: Optional[int] = None

    @property
    def key(self) -> str:
        return f"time:{self.date}"


@dataclass
class SuggestionSet:
    """Output of one suggestion pass."""
    move_suggestions: List[MoveSuggestion] = field(default_factory=list)
    start_time_suggestions: List[StartTimeSuggestion] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.move_suggestions and not self.start_time_suggestions


# Routing
@dataclass(frozen=True)
class DriveTime:
    """Travel time between two addresses."""
    duration_minutes: int
    duration_text: str

    @classmethod
    def from_minutes(cls, minutes: float) -> "DriveTime":
        rounded = int(round(minutes))
        return cls(duration_minutes=rounded, duration_text=f"{rounded} min")


@dataclass
class RouteStop:
    """Job handed to the multi-stop optimizer."""
    id: str
    address: str
    order: Optional[int] = None


@dataclass
class RouteSegment:
    """One leg of an optimized route."""
    from_address: str
    to_address: str
    duration_minutes: float
    duration_text: str
    distance_meters: float = 0.0


@dataclass
class RouteResult:
    """Visiting order and legs returned by the multi-stop optimizer."""
    jobs: List[RouteStop]
    segments: List[RouteSegment]
    total_duration_minutes: float = 0.0
    total_distance_meters: float = 0.0


# Collaborator interfaces
class JobStore(Protocol):
    def fetch_jobs(self) -> List[Job]: ...

    def add_job(self, job: Job) -> Job: ...

    def update_job(self, job: Job) -> Job: ...


class CustomerStore(Protocol):
    def fetch_customers(self) -> List[Customer]: ...

    def update_customer(self, customer: Customer) -> Customer: ...


class WeatherProvider(Protocol):
    async def get_weather_data(self, coords: Coordinates) -> List[WeatherDay]: ...

    async def get_coordinates_from_address(self, text: str) -> Optional[Coordinates]: ...


class RouteProvider(Protocol):
    async def get_drive_time(self, origin: str, destination: str) -> Optional[DriveTime]: ...

    async def optimize_route(self, origin: str, stops: List[RouteStop]) -> Optional[RouteResult]: ...


def jobs_by_date(jobs: List[Job]) -> Dict[str, List[Job]]:
    """Group jobs by calendar day, preserving input order."""
    grouped: Dict[str, List[Job]] = {}
    for job in jobs:
        grouped.setdefault(job.date, []).append(job)
    return grouped
