"""User location providers."""

import json
import logging
from typing import Optional

import httpx

from .errors import GeolocationError
from .models import Location

logger = logging.getLogger(__name__)

DEFAULT_IP_LOOKUP_URL = "https://ipapi.co/json/"


class Locator:
    """Resolves the user's current location."""

    async def locate(self, client: httpx.AsyncClient) -> Location:
        """
        Return the user's location.

        Raises:
            GeolocationError: If the location is unavailable.
        """
        raise NotImplementedError


class FixedLocator(Locator):
    """A location supplied up front, e.g. from settings or a command line."""

    def __init__(self, latitude: float, longitude: float):
        self.location = Location(latitude=latitude, longitude=longitude)

    async def locate(self, client: httpx.AsyncClient) -> Location:
        return self.location


class IPLocator(Locator):
    """Approximate location from an IP geolocation JSON service."""

    def __init__(self, url: str = DEFAULT_IP_LOOKUP_URL, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def locate(self, client: httpx.AsyncClient) -> Location:
        try:
            response = await client.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            logger.error(f"Location lookup failed: {e}")
            raise GeolocationError(f"Location lookup failed: {e}") from e

        latitude = _coordinate(data, "latitude", "lat")
        longitude = _coordinate(data, "longitude", "lon")
        if latitude is None or longitude is None:
            raise GeolocationError("Location service returned no coordinates")

        logger.debug(f"Located at {latitude:.4f}, {longitude:.4f}")
        return Location(latitude=latitude, longitude=longitude)


def _coordinate(data, *keys) -> Optional[float]:
    if not isinstance(data, dict):
        return None
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError, OverflowError):
            return None
    return None
