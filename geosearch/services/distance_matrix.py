"""Road distances from the distance matrix provider, requested in paced batches."""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
import structlog

from geosearch.core.config import settings
from geosearch.core.errors import BackendUnavailable, ProviderQuotaExceeded
from geosearch.models.dto import Coordinate, DistanceStatus, EnrichedEntity, Entity, TravelMode

logger = structlog.get_logger(__name__)

PROVIDER_MODES: Dict[TravelMode, str] = {
    TravelMode.WALKING: "walking",
    TravelMode.CYCLING: "bicycling",
    TravelMode.DRIVING: "driving",
    TravelMode.TRANSIT: "transit",
}

QUOTA_STATUSES = ("OVER_QUERY_LIMIT", "OVER_DAILY_LIMIT")


class RemoteDistanceEnricher:
    """Adds provider road distance and travel time to entities.

    Batches run one after another with a fixed pause between them. A failed
    batch hands its entities back untouched; the other batches are unaffected.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: str = settings.DISTANCE_MATRIX_URL,
        batch_size: int = settings.DISTANCE_BATCH_SIZE,
        batch_delay: float = settings.DISTANCE_BATCH_DELAY,
        timeout: float = settings.DISTANCE_MATRIX_TIMEOUT,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.DISTANCE_MATRIX_API_KEY
        self.url = url
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def enrich(
        self,
        origin: Optional[Coordinate],
        entities: Sequence[Entity],
        mode: Union[TravelMode, str] = TravelMode.DRIVING,
    ) -> List[EnrichedEntity]:
        """Return the entities, in order, with road distance fields where available."""
        enriched = [EnrichedEntity.from_entity(e) for e in entities]
        if not enriched:
            return enriched
        if origin is None or not origin.is_valid():
            logger.info("distance_matrix_skipped", reason="invalid_origin")
            return enriched

        mode = TravelMode(mode)
        results: List[EnrichedEntity] = []
        batches = [enriched[i:i + self.batch_size] for i in range(0, len(enriched), self.batch_size)]

        for index, batch in enumerate(batches):
            if index > 0 and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)
            try:
                results.extend(await self._enrich_batch(origin, batch, mode))
            except (BackendUnavailable, httpx.HTTPError, ValueError) as e:
                logger.warning(
                    "distance_matrix_batch_failed",
                    batch=index,
                    size=len(batch),
                    error=str(e),
                    quota=isinstance(e, ProviderQuotaExceeded),
                )
                results.extend(batch)

        return results

    async def _enrich_batch(
        self,
        origin: Coordinate,
        batch: List[EnrichedEntity],
        mode: TravelMode,
    ) -> List[EnrichedEntity]:
        routable = [
            i for i, e in enumerate(batch)
            if e.coordinate is not None and e.coordinate.is_valid()
        ]
        elements: Dict[int, Dict[str, Any]] = {}

        if routable:
            rows = await self._request(origin, [batch[i].coordinate for i in routable], mode)
            elements = dict(zip(routable, rows))

        out: List[EnrichedEntity] = []
        for i, entity in enumerate(batch):
            element = elements.get(i)
            if not isinstance(element, dict) or element.get("status") != "OK":
                out.append(entity.with_updates(distance_status=DistanceStatus.UNAVAILABLE))
                continue

            distance = element.get("distance")
            duration = element.get("duration")
            distance = distance if isinstance(distance, dict) else {}
            duration = duration if isinstance(duration, dict) else {}
            out.append(
                entity.with_updates(
                    road_distance=_scaled(distance.get("value"), 1000),  # meters -> km
                    road_distance_text=distance.get("text"),
                    travel_time=_scaled(duration.get("value"), 60),  # seconds -> minutes
                    travel_time_text=duration.get("text"),
                    distance_status=DistanceStatus.OK,
                )
            )
        return out

    async def _request(
        self,
        origin: Coordinate,
        destinations: List[Coordinate],
        mode: TravelMode,
    ) -> List[Dict[str, Any]]:
        if not self.api_key:
            raise BackendUnavailable("distance matrix API key not configured")

        params = {
            "origins": f"{origin.latitude},{origin.longitude}",
            "destinations": "|".join(f"{d.latitude},{d.longitude}" for d in destinations),
            "mode": PROVIDER_MODES[mode],
            "units": "metric",
            "key": self.api_key,
        }
        response = await self._http.get(self.url, params=params)
        if response.status_code == 429:
            raise ProviderQuotaExceeded("distance matrix rate limited")
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise BackendUnavailable("unexpected distance matrix payload")

        status = data.get("status")
        if status in QUOTA_STATUSES:
            raise ProviderQuotaExceeded(f"distance matrix status {status}")
        if status != "OK":
            raise BackendUnavailable(f"distance matrix status {status}")

        rows = data.get("rows")
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            raise BackendUnavailable("unexpected distance matrix payload")
        elements = rows[0].get("elements") or []
        if not isinstance(elements, list):
            raise BackendUnavailable("unexpected distance matrix payload")
        return elements


def _scaled(value: Any, divisor: float) -> Optional[float]:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    return round(value / divisor, 2)
