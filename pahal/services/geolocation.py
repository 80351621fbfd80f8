"""Position lookup and reverse geocoding.

Everything here is best-effort: failures are logged and turned into
``None`` so callers can carry on without a location.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import requests

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    address: str

    def to_dict(self):
        return {"lat": self.lat, "lng": self.lng, "address": self.address}


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2 - lon1)

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(a, 1.0)))


def format_coordinates(lat: float, lng: float) -> str:
    return f"{lat:.6f}, {lng:.6f}"


def is_valid_position(lat: float, lng: float) -> bool:
    """Finite WGS84 coordinates within latitude and longitude bounds."""
    return (
        math.isfinite(lat) and math.isfinite(lng)
        and -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0
    )


# ---------- Position providers ----------

class PositionUnavailable(Exception):
    """The current position could not be determined."""


class StaticPositionProvider:
    """A camera mounted at a known, fixed point."""

    def __init__(self, lat: float, lng: float):
        self.lat = lat
        self.lng = lng

    def get_current_position(self) -> tuple:
        return self.lat, self.lng


class HttpPositionProvider:
    """Looks up the host position from an IP geolocation endpoint.

    Accepts replies with ``lat``/``lon``, ``lat``/``lng`` or
    ``latitude``/``longitude`` keys.
    """

    def __init__(self, url: str, timeout: float = 10.0, session=None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_current_position(self) -> tuple:
        try:
            response = self.session.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise PositionUnavailable(f"Position lookup failed: {e}") from e

        if not isinstance(data, dict):
            raise PositionUnavailable(f"Position reply is not an object: {data!r}")

        lat = data.get("lat", data.get("latitude"))
        lng = data.get("lon", data.get("lng", data.get("longitude")))
        try:
            lat, lng = float(lat), float(lng)
        except (TypeError, ValueError) as e:
            raise PositionUnavailable(f"Position reply without coordinates: {data}") from e

        if not is_valid_position(lat, lng):
            raise PositionUnavailable(f"Position out of range: {lat}, {lng}")
        return lat, lng


class NullPositionProvider:
    """No position source configured."""

    def get_current_position(self) -> tuple:
        raise PositionUnavailable("No position source configured")


# ---------- Reverse geocoding ----------

class Geocoder:
    """Nominatim-compatible reverse geocoder."""

    def __init__(self, config=None, session=None):
        if config is None:
            from pahal.config import Config
            config = Config

        self.url = config.GEOCODER_URL
        self.user_agent = config.GEOCODER_USER_AGENT
        self.timeout = config.GEOLOCATION_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def reverse_geocode(self, lat: float, lng: float) -> Optional[str]:
        if not self.url:
            return None
        try:
            response = self.session.get(
                self.url,
                params={"lat": lat, "lon": lng, "format": "json"},
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Reverse geocoding failed for {format_coordinates(lat, lng)}: {e}")
            return None

        return data.get("display_name") if isinstance(data, dict) else None

    def resolve_address(self, lat: float, lng: float) -> str:
        """Street address when available, otherwise the formatted coordinates."""
        return self.reverse_geocode(lat, lng) or format_coordinates(lat, lng)


class Geolocator:
    """Combines a position provider with reverse geocoding."""

    def __init__(self, provider, geocoder: Geocoder):
        self.provider = provider
        self.geocoder = geocoder

    def locate(self) -> Optional[Location]:
        try:
            lat, lng = self.provider.get_current_position()
        except PositionUnavailable as e:
            logger.warning(f"Location unavailable: {e}")
            return None

        if not is_valid_position(lat, lng):
            logger.warning(f"Ignoring invalid position {lat}, {lng}")
            return None

        return Location(lat=lat, lng=lng, address=self.geocoder.resolve_address(lat, lng))


def build_position_provider(config=None):
    """Pick the position source from configuration."""
    if config is None:
        from pahal.config import Config
        config = Config

    if config.CAMERA_LATITUDE is not None and config.CAMERA_LONGITUDE is not None:
        return StaticPositionProvider(config.CAMERA_LATITUDE, config.CAMERA_LONGITUDE)
    if config.POSITION_URL:
        return HttpPositionProvider(config.POSITION_URL, timeout=config.GEOLOCATION_TIMEOUT_SECONDS)
    return NullPositionProvider()
