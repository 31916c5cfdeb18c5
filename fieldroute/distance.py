"""
Google Maps integration for drive times between customer addresses.
Handles rate limiting, retries, caching and the offline street heuristic.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import httpx

from .models import DriveTime, RouteProvider
from .schemas import AppConfig, Settings


logger = logging.getLogger(__name__)

STREET_TYPES = {
    "lane": "lane", "ln": "lane",
    "drive": "drive", "dr": "drive",
    "street": "street", "st": "street",
    "road": "road", "rd": "road",
    "avenue": "avenue", "ave": "avenue",
    "circle": "circle", "cir": "circle",
    "court": "court", "ct": "court",
    "way": "way",
    "boulevard": "boulevard", "blvd": "boulevard",
}

ADDRESS_PATTERN = re.compile(
    # The street type is the last word of the street part, before a comma or the end
    r"^(\d+)\s+([\w\s]+?)\s+(" + "|".join(sorted(STREET_TYPES, key=len, reverse=True)) + r")\.?\s*(?:,|$)",
    re.IGNORECASE
)


class GoogleApiError(Exception):
    """Non-OK status returned by a Google API."""


@dataclass
class ParsedAddress:
    """Street components used by the offline estimator."""
    number: int
    name: str
    street_type: str
    full_street: str


@dataclass
class RouteMatrix:
    """Duration and distance matrix between addresses."""
    addresses: List[str]
    durations_minutes: List[List[Optional[float]]]  # [origin_idx][dest_idx] = minutes
    distances_meters: List[List[Optional[float]]]   # [origin_idx][dest_idx] = meters

    def get_duration(self, origin_idx: int, dest_idx: int) -> Optional[float]:
        """Get duration in minutes between two points."""
        return self.durations_minutes[origin_idx][dest_idx]

    def get_distance(self, origin_idx: int, dest_idx: int) -> Optional[float]:
        """Get distance in meters between two points."""
        return self.distances_meters[origin_idx][dest_idx]


def parse_address(address: str) -> ParsedAddress:
    """Split '123 Oak Lane, Town' into number, street name and street type."""
    match = ADDRESS_PATTERN.match(address.strip())
    if match:
        name = match.group(2).lower().strip()
        street_type = STREET_TYPES[match.group(3).lower()]
        return ParsedAddress(
            number=int(match.group(1)),
            name=name,
            street_type=street_type,
            full_street=f"{name} {street_type}"
        )
    cleaned = re.sub(r"[^a-z0-9\s]", "", address.lower()).strip()
    return ParsedAddress(number=0, name=cleaned, street_type="", full_street=cleaned)


def _bucket(delta: int, buckets: List[List[int]], max_minutes: int) -> int:
    for limit, minutes in buckets:
        if delta < limit:
            return minutes
    return max_minutes


def estimate_fallback(from_address: str, to_address: str, config: Optional[AppConfig] = None) -> DriveTime:
    """
    Deterministic drive-time guess from street names and house numbers.

    Same street buckets by house-number delta, streets sharing a long name
    token are treated as neighbours, otherwise the delta is used as a rough
    distance proxy.
    """
    rules = (config or AppConfig()).drive_time
    a = parse_address(from_address)
    b = parse_address(to_address)
    delta = abs(a.number - b.number)

    if a.full_street == b.full_street:
        minutes = _bucket(delta, rules.same_street_buckets, rules.same_street_max_minutes)
        return DriveTime.from_minutes(minutes)

    words_b = b.name.split()
    shared = [w for w in a.name.split() if len(w) >= rules.shared_token_min_length and w in words_b]
    if shared:
        return DriveTime.from_minutes(rules.shared_token_minutes)

    if a.street_type == b.street_type and delta < rules.same_type_max_delta:
        return DriveTime.from_minutes(rules.same_type_minutes)

    return DriveTime.from_minutes(_bucket(delta, rules.spread_buckets, rules.spread_max_minutes))


class GoogleMapsClient:
    """Google Distance Matrix client with rate limiting and retry logic."""

    def __init__(self, config: AppConfig, settings: Settings):
        """Initialize Google Maps client."""
        self.config = config
        self.api_key = settings.google_maps_api_key
        self.base_url = "https://maps.googleapis.com/maps/api"

        # Rate limiting
        self.last_request_time = 0.0
        self.min_request_interval = 1.0 / config.google.rate_limit_requests_per_second

        # HTTP client
        self.client = httpx.AsyncClient(timeout=config.google.timeout_seconds)

        if not self.api_key and not config.dev.mock_google_api:
            logger.warning("Google Maps API key not configured - drive times will use the offline estimate")

    async def _rate_limited_request(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Make a rate-limited HTTP request with retries."""
        # Rate limiting
        current_time = time.time()
        time_since_last = current_time - self.last_request_time
        if time_since_last < self.min_request_interval:
            await asyncio.sleep(self.min_request_interval - time_since_last)

        params["key"] = self.api_key

        for attempt in range(self.config.google.max_retries):
            try:
                self.last_request_time = time.time()
                response = await self.client.get(url, params=params)
                response.raise_for_status()

                data = response.json()

                if data.get("status") == "OK":
                    return data
                elif data.get("status") in ["ZERO_RESULTS", "NOT_FOUND"]:
                    logger.warning(f"Google API returned {data.get('status')}: {data.get('error_message', '')}")
                    return data
                else:
                    raise GoogleApiError(f"Google API error: {data.get('status')} - {data.get('error_message', '')}")

            except (httpx.HTTPError, GoogleApiError) as e:
                logger.warning(f"Request attempt {attempt + 1} failed: {e}")
                if attempt < self.config.google.max_retries - 1:
                    await asyncio.sleep(self.config.google.retry_delay_seconds * (2 ** attempt))
                else:
                    raise

    async def get_drive_time(self, origin: str, destination: str) -> Optional[DriveTime]:
        """Drive time for one directional address pair, or None on failure."""
        if self.config.dev.mock_google_api:
            return estimate_fallback(origin, destination, self.config)

        if not self.api_key:
            return None

        url = f"{self.base_url}/distancematrix/json"
        params = {
            "origins": origin,
            "destinations": destination,
            "units": "imperial",
            "departure_time": "now",
        }

        try:
            data = await self._rate_limited_request(url, params)
            element = data["rows"][0]["elements"][0]
            if element.get("status") != "OK":
                logger.warning(f"No route from '{origin}' to '{destination}': {element.get('status')}")
                return None
            duration = element.get("duration_in_traffic", element["duration"])
            minutes = int(round(duration["value"] / 60.0))
            return DriveTime(duration_minutes=minutes, duration_text=f"{minutes} min")
        except (httpx.HTTPError, GoogleApiError, KeyError, IndexError) as e:
            logger.warning(f"Drive time request failed for '{origin}' -> '{destination}': {e}")
            return None

    async def compute_route_matrix(self, addresses: List[str]) -> Optional[RouteMatrix]:
        """
        Compute an all-pairs matrix between addresses.
        Unreachable pairs are left as None.
        """
        if not addresses:
            return None

        if self.config.dev.mock_google_api:
            return self._mock_route_matrix(addresses)

        if not self.api_key:
            logger.error("Cannot compute routes without API key")
            return None

        url = f"{self.base_url}/distancematrix/json"
        joined = "|".join(addresses)
        params = {
            "origins": joined,
            "destinations": joined,
            "units": "imperial",
            "departure_time": "now",
        }

        try:
            logger.info(f"Computing distance matrix for {len(addresses)}x{len(addresses)} addresses")
            data = await self._rate_limited_request(url, params)
            if data.get("status") != "OK":
                logger.error(f"Distance Matrix API failed: {data.get('status')} - {data.get('error_message', '')}")
                return None
            return self._parse_distance_matrix(data, addresses)
        except (httpx.HTTPError, GoogleApiError) as e:
            logger.error(f"Distance matrix request error: {e}")
            return None

    def _parse_distance_matrix(self, data: Dict[str, Any], addresses: List[str]) -> RouteMatrix:
        """Parse Google Distance Matrix API response."""
        durations_minutes = []
        distances_meters = []

        for i, row in enumerate(data["rows"]):
            duration_row = []
            distance_row = []

            for j, element in enumerate(row["elements"]):
                if i == j:
                    duration_row.append(0.0)
                    distance_row.append(0.0)
                elif element.get("status") == "OK":
                    duration_seconds = element["duration_in_traffic"]["value"] \
                        if "duration_in_traffic" in element \
                        else element["duration"]["value"]
                    duration_row.append(duration_seconds / 60.0)
                    distance_row.append(float(element["distance"]["value"]))
                else:
                    logger.warning(f"No route from address {i} to address {j}: {element.get('status')}")
                    duration_row.append(None)
                    distance_row.append(None)

            durations_minutes.append(duration_row)
            distances_meters.append(distance_row)

        return RouteMatrix(
            addresses=addresses,
            durations_minutes=durations_minutes,
            distances_meters=distances_meters
        )

    def _mock_route_matrix(self, addresses: List[str]) -> RouteMatrix:
        """Mock route matrix built from the offline street heuristic."""
        durations_minutes = []
        distances_meters = []

        for origin in addresses:
            duration_row = []
            distance_row = []
            for dest in addresses:
                if origin == dest:
                    duration_row.append(0.0)
                    distance_row.append(0.0)
                else:
                    minutes = float(estimate_fallback(origin, dest, self.config).duration_minutes)
                    duration_row.append(minutes)
                    distance_row.append(minutes * 600.0)  # ~36 km/h city driving
            durations_minutes.append(duration_row)
            distances_meters.append(distance_row)

        logger.debug(f"Mock route matrix: {len(addresses)} x {len(addresses)} addresses")
        return RouteMatrix(
            addresses=addresses,
            durations_minutes=durations_minutes,
            distances_meters=distances_meters
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


class _PairBatch:
    """Counts resolved pairs so the completion callback fires once."""

    def __init__(self, expected: int, on_complete: Optional[Callable[[], None]]):
        self.expected = expected
        self.resolved = 0
        self.fired = False
        self.on_complete = on_complete

    def mark_resolved(self) -> None:
        self.resolved += 1
        if self.resolved >= self.expected and not self.fired:
            self.fired = True
            if self.on_complete is not None:
                try:
                    self.on_complete()
                except Exception as e:
                    logger.error(f"Drive time refresh callback failed: {e}")


class DriveTimeEstimator:
    """
    Drive times between addresses with a directional cache.

    Callers always get a value immediately from `get` (cached or offline
    estimate); `fetch` and `resolve_pairs` upgrade the cache from the
    distance provider in the background.
    """

    def __init__(self, config: AppConfig, provider: Optional[RouteProvider] = None):
        """Initialize estimator."""
        self.config = config
        self.provider = provider
        self._cache: Dict[str, DriveTime] = {}

    @staticmethod
    def cache_key(from_address: str, to_address: str) -> str:
        return f"{from_address}|{to_address}"

    def cached(self, from_address: str, to_address: str) -> Optional[DriveTime]:
        return self._cache.get(self.cache_key(from_address, to_address))

    def store(self, from_address: str, to_address: str, drive_time: DriveTime) -> None:
        """Cache a drive time obtained elsewhere, e.g. a leg of an optimized route."""
        self._cache[self.cache_key(from_address, to_address)] = drive_time

    def get(self, from_address: str, to_address: str) -> DriveTime:
        """Cached drive time, or the offline estimate."""
        hit = self.cached(from_address, to_address)
        if hit is not None:
            return hit
        return self.estimate_fallback(from_address, to_address)

    def estimate_fallback(self, from_address: str, to_address: str) -> DriveTime:
        return estimate_fallback(from_address, to_address, self.config)

    async def fetch(self, from_address: str, to_address: str) -> DriveTime:
        """Resolve through the provider, falling back on any failure."""
        key = self.cache_key(from_address, to_address)
        if key in self._cache:
            return self._cache[key]

        result = None
        if self.provider is not None:
            try:
                result = await self.provider.get_drive_time(from_address, to_address)
            except Exception as e:
                logger.warning(f"Drive time lookup failed for '{key}': {e}")

        if result is None:
            return self.estimate_fallback(from_address, to_address)

        self._cache[key] = result
        return result

    async def resolve_pairs(
        self,
        pairs: Iterable[Tuple[str, str]],
        on_complete: Optional[Callable[[], None]] = None
    ) -> Dict[str, DriveTime]:
        """
        Resolve a set of address pairs concurrently.

        Args:
            pairs: (from_address, to_address) tuples; duplicates are collapsed
            on_complete: Called exactly once after every pair has resolved

        Returns:
            Drive time per "from|to" key
        """
        unique = list(dict.fromkeys(pairs))
        results: Dict[str, DriveTime] = {}
        if not unique:
            return results

        batch = _PairBatch(expected=len(unique), on_complete=on_complete)

        async def resolve(pair: Tuple[str, str]) -> None:
            try:
                results[self.cache_key(*pair)] = await self.fetch(*pair)
            finally:
                batch.mark_resolved()

        await asyncio.gather(*(resolve(pair) for pair in unique))
        return results

    def clear_cache(self) -> None:
        """Drop all cached drive times."""
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
