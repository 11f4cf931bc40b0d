"""
Where the user is, as context for the agent.

Coordinates reported by the user's phone are reverse geocoded with LocationIQ
into a city, state and country, and a second call looks up the timezone. Any
part of the lookup that fails is left as "Unknown" so a query can always go
ahead without it.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Any, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests

from config import DEFAULT_LOCATION_TIMEOUT

log = logging.getLogger("mira_voice")

UNKNOWN = "Unknown"
LOCATIONIQ_BASE_URL = "https://us1.locationiq.com/v1"


@dataclass
class TimezoneInfo:
    name: str = UNKNOWN
    short_name: str = UNKNOWN
    full_name: str = UNKNOWN
    offset_sec: int = 0
    is_dst: bool = False


@dataclass
class LocationContext:
    city: str = UNKNOWN
    state: str = UNKNOWN
    country: str = UNKNOWN
    timezone: TimezoneInfo = field(default_factory=TimezoneInfo)

    @property
    def is_known(self) -> bool:
        return self.city != UNKNOWN

    def merged_with(self, update: "LocationContext") -> "LocationContext":
        """Newer values win, but "Unknown" never replaces a known value"""

        def pick(new, old, unknown):
            if new == unknown and old != unknown:
                return old
            return new

        tz_known = update.timezone.name != UNKNOWN
        return LocationContext(
            city=pick(update.city, self.city, UNKNOWN),
            state=pick(update.state, self.state, UNKNOWN),
            country=pick(update.country, self.country, UNKNOWN),
            timezone=TimezoneInfo(
                name=pick(update.timezone.name, self.timezone.name, UNKNOWN),
                short_name=pick(update.timezone.short_name, self.timezone.short_name, UNKNOWN),
                full_name=pick(update.timezone.full_name, self.timezone.full_name, UNKNOWN),
                offset_sec=pick(update.timezone.offset_sec, self.timezone.offset_sec, 0),
                is_dst=update.timezone.is_dst if tz_known else self.timezone.is_dst,
            ),
        )

    def local_time(self, now: Optional[datetime] = None) -> Optional[str]:
        """The user's wall-clock time, or None when the timezone is not usable"""
        if self.timezone.name == UNKNOWN:
            return None
        try:
            zone = ZoneInfo(self.timezone.name)
        except (ZoneInfoNotFoundError, ValueError):
            log.warning(f"Unknown timezone name: {self.timezone.name!r}")
            return None
        now = now or datetime.now(dt_timezone.utc)
        return now.astimezone(zone).strftime("%A, %B %d, %Y %I:%M %p")


def parse_coordinates(location: Any) -> Optional[Tuple[float, float]]:
    """Pull ``(lat, lng)`` out of a location update, None if it is unusable"""
    if isinstance(location, dict):
        lat = location.get("lat")
        lng = location.get("lng", location.get("lon"))
    else:
        lat = getattr(location, "lat", None)
        lng = getattr(location, "lng", getattr(location, "lon", None))

    for value in (lat, lng):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return float(lat), float(lng)


class LocationResolver:
    """Turns coordinates into a LocationContext using the LocationIQ API"""

    def __init__(
        self,
        api_key: str,
        timeout: float = DEFAULT_LOCATION_TIMEOUT,
        base_url: str = LOCATIONIQ_BASE_URL,
        http=None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.http = http or requests

    async def resolve(self, lat: float, lng: float) -> LocationContext:
        return await asyncio.to_thread(self._resolve_blocking, lat, lng)

    def _resolve_blocking(self, lat: float, lng: float) -> LocationContext:
        context = LocationContext()
        if not self.api_key:
            log.warning("No LocationIQ token configured, location stays unknown")
            return context

        data = self._get_json("reverse.php", lat, lng, "reverse geocoding")
        address = data.get("address") if isinstance(data, dict) else None
        if isinstance(address, dict):
            context.city = address.get("city") or address.get("town") or address.get("village") or "Unknown city"
            context.state = address.get("state") or "Unknown state"
            context.country = address.get("country") or "Unknown country"

        data = self._get_json("timezone", lat, lng, "timezone lookup")
        tz = data.get("timezone") if isinstance(data, dict) else None
        if isinstance(tz, dict):
            offset = tz.get("offset_sec")
            context.timezone = TimezoneInfo(
                name=tz.get("name") or UNKNOWN,
                short_name=tz.get("short_name") or UNKNOWN,
                full_name=tz.get("full_name") or UNKNOWN,
                offset_sec=offset if isinstance(offset, int) and not isinstance(offset, bool) else 0,
                is_dst=bool(tz.get("now_in_dst")),
            )

        return context

    def _get_json(self, path: str, lat: float, lng: float, what: str) -> Any:
        url = f"{self.base_url}/{path}"
        params = {"key": self.api_key, "lat": lat, "lon": lng, "format": "json"}
        try:
            response = self.http.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            log.warning(f"LocationIQ {what} failed: {e}")
            return None

        if not response.ok:
            log.warning(f"LocationIQ {what} failed with status: {response.status_code}")
            return None

        try:
            return response.json()
        except ValueError as e:
            log.warning(f"LocationIQ {what} returned invalid JSON: {e}")
            return None
