"""Open-Meteo forecast and geocoding over httpx. No API key required."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from ..models import Coordinates, HourlyForecast, WeatherDay
from ..schemas import AppConfig

logger = logging.getLogger(__name__)

HOURLY_VARIABLES = ["precipitation", "rain", "weather_code"]
DAILY_VARIABLES = ["precipitation_probability_max"]

# WMO weather interpretation codes
WMO_CODES = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    56: "Light freezing drizzle",
    57: "Dense freezing drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    66: "Light freezing rain",
    67: "Heavy freezing rain",
    71: "Slight snowfall",
    73: "Moderate snowfall",
    75: "Heavy snowfall",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with slight hail",
    99: "Thunderstorm with heavy hail",
}


def describe(weather_code: Optional[int]) -> str:
    return WMO_CODES.get(weather_code or 0, "Unknown")


class OpenMeteoClient:
    """Weather provider backed by the Open-Meteo forecast API."""

    def __init__(self, config: AppConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.settings = config.open_meteo
        self.client = client or httpx.AsyncClient(timeout=self.settings.timeout_seconds)

    async def get_coordinates_from_address(self, text: str) -> Optional[Coordinates]:
        """Geocode a place name; None when not found or the request fails."""
        params = {"name": text, "count": 1, "language": "en", "format": "json"}
        try:
            response = await self.client.get(self.settings.geocoding_url, params=params)
            response.raise_for_status()
            results = response.json().get("results") or []
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Geocoding failed for '{text}': {e}")
            return None

        if not results:
            logger.warning(f"Location not found: '{text}'")
            return None

        top = results[0]
        region = top.get("admin1") or top.get("country") or ""
        name = f"{top.get('name', text)}, {region}" if region else top.get("name", text)
        return Coordinates(lat=top["latitude"], lon=top["longitude"], name=name)

    async def get_weather_data(self, coords: Coordinates) -> List[WeatherDay]:
        """
        Daily forecast with hourly samples inside the working window.

        Returns:
            One WeatherDay per forecast date, or an empty list on failure
        """
        params = {
            "latitude": coords.lat,
            "longitude": coords.lon,
            "hourly": ",".join(HOURLY_VARIABLES),
            "daily": ",".join(DAILY_VARIABLES),
            "timezone": self.settings.timezone,
            "forecast_days": self.settings.forecast_days,
        }

        logger.info(f"Fetching {self.settings.forecast_days}-day forecast for {coords.name or (coords.lat, coords.lon)}")
        try:
            response = await self.client.get(self.settings.forecast_url, params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Forecast request failed: {e}")
            return []

        return self._parse_forecast(data)

    def _parse_forecast(self, data: Dict[str, Any]) -> List[WeatherDay]:
        days: Dict[str, WeatherDay] = {}

        daily = data.get("daily", {})
        dates = daily.get("time", [])
        chances = daily.get("precipitation_probability_max", [0] * len(dates))
        for i, date_str in enumerate(dates):
            days[date_str] = WeatherDay(date=date_str, precipitation_chance=int(chances[i] or 0))

        hourly = data.get("hourly", {})
        times = hourly.get("time", [])
        rain = hourly.get("rain", [0] * len(times))
        precipitation = hourly.get("precipitation", [0] * len(times))
        codes = hourly.get("weather_code", [0] * len(times))

        for i, time_str in enumerate(times):
            moment = datetime.fromisoformat(time_str)
            if not self.settings.sample_start_hour <= moment.hour <= self.settings.sample_end_hour:
                continue
            date_str = moment.date().isoformat()
            day = days.setdefault(date_str, WeatherDay(date=date_str))
            day.hourly.append(HourlyForecast(
                hour24=moment.hour,
                description=describe(codes[i]),
                rain_mm=float(rain[i] if rain[i] is not None else (precipitation[i] or 0))
            ))

        result = sorted(days.values(), key=lambda d: d.date)
        logger.info(f"Fetched forecast for {len(result)} days")
        return result

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
