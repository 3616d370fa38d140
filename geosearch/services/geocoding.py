# geosearch/services/geocoding.py
# Postal code -> coordinate and coordinate -> address lookups against the geocoding provider.
# Failures never raise: a missing location is an ordinary branch for the orchestrator.

import asyncio
import logging
import random
from typing import Any, Dict, Optional

import httpx

from geosearch.core.config import settings
from geosearch.models.dto import AddressLookup, Coordinate

logger = logging.getLogger(__name__)


class Geocoder:
    """
    Forward and reverse geocoding with an unbounded memo of successful answers.

    Only successes are memoized, so a provider outage is retried on the next call.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: str = settings.GEOCODING_URL,
        region: str = settings.GEOCODING_REGION,
        timeout: float = settings.GEOCODING_TIMEOUT,
        max_retries: int = settings.GEOCODING_MAX_RETRIES,
        initial_backoff: float = settings.GEOCODING_INITIAL_BACKOFF,
    ):
        self.api_key = api_key if api_key is not None else settings.GEOCODING_API_KEY
        self.url = url
        self.region = region
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self._cache: Dict[str, Any] = {}

    async def postal_code_to_coordinate(self, code: str) -> Optional[Coordinate]:
        """Resolve a postal code to the centroid the provider reports for it."""
        code = str(code or "").strip()
        if not code:
            return None

        cache_key = f"postal:{code}"
        if cache_key in self._cache:
            return self._cache[cache_key]

        address = f"{code},{self.region}" if self.region else code
        result = await self._request({"address": address})
        if result is None:
            return None

        geometry = result.get("geometry")
        location = geometry.get("location") if isinstance(geometry, dict) else None
        if not isinstance(location, dict):
            location = {}
        lat, lng = location.get("lat"), location.get("lng")
        coordinate = None
        if isinstance(lat, (int, float)) and isinstance(lng, (int, float)):
            coordinate = Coordinate(latitude=lat, longitude=lng)
        if coordinate is None or not coordinate.is_valid():
            logger.warning(f"Geocoder returned an unusable location for {code}: {location}")
            return None

        self._cache[cache_key] = coordinate
        return coordinate

    async def coordinate_to_address(self, coordinate: Optional[Coordinate]) -> Optional[AddressLookup]:
        """Reverse geocode a coordinate to a formatted address and postal code."""
        if coordinate is None or not coordinate.is_valid():
            return None

        cache_key = f"coords:{coordinate.latitude:.6f},{coordinate.longitude:.6f}"
        if cache_key in self._cache:
            return self._cache[cache_key]

        result = await self._request({"latlng": f"{coordinate.latitude},{coordinate.longitude}"})
        if result is None:
            return None

        lookup = AddressLookup(
            formatted_address=str(result.get("formatted_address") or ""),
            postal_code=extract_postal_code(result.get("address_components", [])),
            place_id=result.get("place_id") if isinstance(result.get("place_id"), str) else None,
        )
        self._cache[cache_key] = lookup
        return lookup

    def clear_cache(self) -> int:
        size = len(self._cache)
        self._cache.clear()
        return size

    async def _request(self, params: Dict[str, str]) -> Optional[Dict[str, Any]]:
        """Call the provider and return its first result, or None on any failure."""
        if not self.api_key:
            logger.warning("Geocoding skipped: no API key configured.")
            return None

        query = dict(params, key=self.api_key)
        backoff_time = self.initial_backoff

        for attempt in range(self.max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.url, params=query)
                    response.raise_for_status()
                    data = response.json()

                if not isinstance(data, dict):
                    logger.warning(f"Geocoding returned an unexpected payload for {params}")
                    return None

                status = data.get("status")
                results = data.get("results") or []
                if status == "OK" and isinstance(results, list) and results and isinstance(results[0], dict):
                    return results[0]

                logger.warning(f"Geocoding returned status {status} for {params}")
                return None

            except httpx.TimeoutException:
                logger.warning(f"Geocoding attempt {attempt + 1} timed out.")
                if attempt < self.max_retries:
                    # Exponential backoff with jitter
                    wait_time = max(0.0, backoff_time * (2 ** attempt) + random.uniform(-0.2, 0.2))
                    logger.info(f"Retrying in {wait_time:.2f}s...")
                    await asyncio.sleep(wait_time)
            except httpx.HTTPStatusError as e:
                logger.error(f"Geocoding API returned status error: {e.response.status_code}")
                return None
            except (httpx.HTTPError, ValueError) as e:
                logger.error(f"Geocoding request failed: {e}")
                return None

        logger.error("Geocoding gave up after repeated timeouts.")
        return None


def extract_postal_code(address_components: Any) -> Optional[str]:
    if not isinstance(address_components, list):
        return None
    for component in address_components:
        if isinstance(component, dict) and "postal_code" in (component.get("types") or []):
            long_name = component.get("long_name")
            return str(long_name) if long_name is not None else None
    return None
