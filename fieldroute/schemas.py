"""
Pydantic schemas for configuration and settings.
"""

from typing import List, Optional
from pydantic import BaseModel, Field, validator
from pydantic_settings import BaseSettings


class ScheduleConfig(BaseModel):
    """Working day window and route timing."""
    day_start_hour: int = Field(default=5, ge=0, le=23)
    day_end_hour: int = Field(default=18, ge=1, le=24)
    slot_count: int = Field(default=14, ge=1, le=24)
    service_minutes: int = Field(default=60, ge=0)  # fixed time spent at each stop
    fallback_leg_minutes: int = Field(default=10, ge=0)
    horizon_days: int = Field(default=30, ge=1)
    max_parallel_days: int = Field(default=4, ge=1)

    @validator('day_end_hour')
    def end_after_start(cls, v, values):
        """Ensure the day ends after it starts."""
        if 'day_start_hour' in values and v <= values['day_start_hour']:
            raise ValueError('day_end_hour must be after day_start_hour')
        return v

    @property
    def max_slot(self) -> int:
        return self.slot_count - 1


class WeatherConfig(BaseModel):
    """Thresholds used to classify a forecast day."""
    bad_fraction: float = Field(default=0.75, gt=0, le=1)
    rain_threshold_mm: float = Field(default=1.0, ge=0)
    heavy_rain_mm: float = Field(default=5.0, ge=0)
    severe_tokens: List[str] = Field(default_factory=lambda: ["thunder", "heavy", "storm"])
    latest_safe_start_hour: int = Field(default=17, ge=0, le=23)
    previous_night_from_hour: int = Field(default=17, ge=0, le=23)
    previous_night_rain_mm: float = Field(default=3.0, ge=0)
    wet_grass_start_hour: int = Field(default=10, ge=0, le=23)


class SuggestionConfig(BaseModel):
    """Suggestion engine knobs."""
    window_days: int = Field(default=5, ge=1, le=16)
    preferred_weekdays: List[int] = Field(default_factory=lambda: [4, 5])  # Friday, Saturday
    start_early_hour: int = Field(default=6, ge=0, le=23)


class DriveTimeConfig(BaseModel):
    """Offline drive-time heuristic buckets as [max_house_number_delta, minutes]."""
    same_street_buckets: List[List[int]] = Field(
        default_factory=lambda: [[50, 2], [200, 3], [400, 5]]
    )
    same_street_max_minutes: int = Field(default=7, ge=0)
    shared_token_min_length: int = Field(default=4, ge=1)
    shared_token_minutes: int = Field(default=8, ge=0)
    same_type_max_delta: int = Field(default=200, ge=0)
    same_type_minutes: int = Field(default=10, ge=0)
    spread_buckets: List[List[int]] = Field(
        default_factory=lambda: [[100, 8], [300, 12], [500, 15], [1000, 18], [2000, 22]]
    )
    spread_max_minutes: int = Field(default=25, ge=0)


class GoogleConfig(BaseModel):
    """Google API configuration."""
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: float = Field(default=1.0, gt=0)
    rate_limit_requests_per_second: int = Field(default=10, ge=1, le=100)
    timeout_seconds: float = Field(default=30.0, gt=0)
    time_threshold_percent: float = Field(default=10.0, ge=0)
    distance_threshold_percent: float = Field(default=15.0, ge=0)


class OpenMeteoConfig(BaseModel):
    """Open-Meteo forecast and geocoding configuration."""
    forecast_url: str = Field(default="https://api.open-meteo.com/v1/forecast")
    geocoding_url: str = Field(default="https://geocoding-api.open-meteo.com/v1/search")
    forecast_days: int = Field(default=7, ge=1, le=16)
    timezone: str = Field(default="auto")
    sample_start_hour: int = Field(default=5, ge=0, le=23)
    sample_end_hour: int = Field(default=18, ge=0, le=23)
    timeout_seconds: float = Field(default=30.0, gt=0)


class UndoConfig(BaseModel):
    """Undo affordance configuration."""
    window_seconds: float = Field(default=5.0, gt=0)


class DatabaseConfig(BaseModel):
    """Database configuration."""
    url: str = Field(default="sqlite:///./fieldroute.db")
    echo: bool = Field(default=False)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR)$"
    )
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


class DevConfig(BaseModel):
    """Development and testing configuration."""
    mock_google_api: bool = Field(default=False)


class ProjectConfig(BaseModel):
    """Top-level project configuration."""
    name: str = Field(default="Field Route Scheduler")
    version: str = Field(default="0.1.0")


class AppConfig(BaseModel):
    """Complete application configuration loaded from params.yaml."""
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    weather: WeatherConfig = Field(default_factory=WeatherConfig)
    suggestions: SuggestionConfig = Field(default_factory=SuggestionConfig)
    drive_time: DriveTimeConfig = Field(default_factory=DriveTimeConfig)
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    open_meteo: OpenMeteoConfig = Field(default_factory=OpenMeteoConfig)
    undo: UndoConfig = Field(default_factory=UndoConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    dev: DevConfig = Field(default_factory=DevConfig)


class Settings(BaseSettings):
    """Environment-based settings (primarily for secrets)."""
    google_maps_api_key: Optional[str] = Field(default=None)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
