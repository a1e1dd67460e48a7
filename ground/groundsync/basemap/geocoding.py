"""
Reverse geocoding of offline area bounds to display names.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, runtime_checkable

import httpx

from ..errors import GeocodingError
from ..model.basemap import LatLngBounds

logger = logging.getLogger(__name__)

UNKNOWN_AREA_NAME = "Unknown area"

# Address keys from most to least specific.
_LOCALITY_KEYS = ("city", "town", "village", "municipality", "county", "state_district", "state")


@runtime_checkable
class Geocoder(Protocol):
    async def get_area_name(self, bounds: LatLngBounds) -> str:
        """Human-readable name for the area.

        Raises:
            GeocodingError: If the lookup fails
        """
        ...


class FixedNameGeocoder:
    """Geocoder returning the same name for every area (no lookup service)."""

    def __init__(self, name: str = UNKNOWN_AREA_NAME) -> None:
        self.name = name

    async def get_area_name(self, bounds: LatLngBounds) -> str:
        return self.name


class NominatimGeocoder:
    """Reverse geocoder backed by a Nominatim-compatible HTTP service.

    The centre of the bounds is looked up and named "<locality>, <country>".
    """

    def __init__(
        self,
        url: str = "https://nominatim.openstreetmap.org/reverse",
        user_agent: str = "groundsync",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def get_area_name(self, bounds: LatLngBounds) -> str:
        center = bounds.center
        params = {
            "lat": center.latitude,
            "lon": center.longitude,
            "format": "jsonv2",
            "zoom": 10,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers={"User-Agent": self.user_agent},
                transport=self._transport,
            ) as client:
                response = await client.get(self.url, params=params)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GeocodingError(f"Reverse geocoding failed for {bounds}: {e}") from e

        address = {}
        if isinstance(payload, dict):
            address = payload.get("address") or {}
        locality = next((address[k] for k in _LOCALITY_KEYS if address.get(k)), None)
        country = address.get("country")
        parts = [p for p in (locality, country) if p]
        if not parts:
            raise GeocodingError(f"No address found for {bounds}")
        return ", ".join(parts)
