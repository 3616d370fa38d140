"""HTTP client for the entity store API.

Every query has an optimized endpoint and a plain one. The optimized endpoint
is tried first; the payload records which of the two answered.
"""

from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
import structlog
from pydantic import ValidationError

from geosearch.core.config import settings
from geosearch.core.errors import BackendUnavailable, ProviderQuotaExceeded
from geosearch.models.dto import BackendPayload, Coordinate, Entity, ResultSource

logger = structlog.get_logger(__name__)

# (optimized, plain) endpoint per query
ENDPOINTS: Dict[str, Tuple[str, str]] = {
    "all": ("/clinics/optimized", "/clinics"),
    "nearby": ("/clinics/nearby-optimized", "/clinics/nearby"),
    "postal_code": ("/clinics/search-by-pincode-optimized", "/clinics/search-by-pincode"),
    "text": ("/clinics/search-optimized", "/clinics/search"),
}

LIST_KEYS = ("clinics", "entities", "results")


class EntityStore(Protocol):
    """What the orchestrator needs from an entity store."""

    async def get_all(self) -> BackendPayload: ...

    async def get_nearby(
        self, origin: Coordinate, radius_km: float, limit: Optional[int] = None, is_entitled: bool = False
    ) -> BackendPayload: ...

    async def get_by_postal_code(
        self, code: str, limit: Optional[int] = None, is_entitled: bool = False
    ) -> BackendPayload: ...

    async def get_by_text(
        self, query: str, limit: Optional[int] = None, is_entitled: bool = False
    ) -> BackendPayload: ...


def parse_entities(items: Any) -> List[Entity]:
    entities: List[Entity] = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        try:
            entities.append(Entity.model_validate(item))
        except ValidationError as e:
            logger.warning("entity_skipped", error=str(e), entity_id=item.get("id"))
    return entities


def parse_payload(data: Any, source: ResultSource) -> BackendPayload:
    """Normalize the list-or-envelope shapes the entity store returns."""
    user_location = None
    if isinstance(data, list):
        items = data
        total = len(data)
    elif isinstance(data, dict):
        items = next((data[k] for k in LIST_KEYS if isinstance(data.get(k), list)), [])
        total = data.get("total")
        location = data.get("userLocation") or data.get("user_location")
        if isinstance(location, dict):
            try:
                user_location = Coordinate.model_validate(location)
            except ValidationError:
                user_location = None
    else:
        raise ValueError(f"unexpected entity store payload: {type(data).__name__}")

    entities = parse_entities(items)
    if not isinstance(total, int) or isinstance(total, bool):
        total = len(entities)
    return BackendPayload(entities=entities, total=total, source=source, user_location=user_location)


class EntityStoreClient:
    """Entity store client with optimized-then-plain fallback per query."""

    def __init__(
        self,
        base_url: str = settings.ENTITY_STORE_URL,
        timeout: float = settings.BACKEND_TIMEOUT,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def get_all(self) -> BackendPayload:
        return await self._query("all", "GET")

    async def get_nearby(
        self,
        origin: Coordinate,
        radius_km: float,
        limit: Optional[int] = None,
        is_entitled: bool = False,
    ) -> BackendPayload:
        body: Dict[str, Any] = {
            "lat": origin.latitude,
            "lng": origin.longitude,
            "radius": radius_km,
            "isPremium": is_entitled,
        }
        if limit:
            body["limit"] = limit
        return await self._query("nearby", "POST", json=body)

    async def get_by_postal_code(
        self,
        code: str,
        limit: Optional[int] = None,
        is_entitled: bool = False,
    ) -> BackendPayload:
        params = self._search_params({"pincode": code}, limit, is_entitled)
        return await self._query("postal_code", "GET", params=params)

    async def get_by_text(
        self,
        query: str,
        limit: Optional[int] = None,
        is_entitled: bool = False,
    ) -> BackendPayload:
        params = self._search_params({"q": query}, limit, is_entitled)
        return await self._query("text", "GET", params=params)

    @staticmethod
    def _search_params(params: Dict[str, Any], limit: Optional[int], is_entitled: bool) -> Dict[str, str]:
        out = {k: str(v) for k, v in params.items()}
        out["isPremium"] = "true" if is_entitled else "false"
        if limit:
            out["limit"] = str(limit)
        return out

    async def _query(self, operation: str, method: str, **kwargs: Any) -> BackendPayload:
        optimized, plain = ENDPOINTS[operation]
        last_error: Optional[Exception] = None

        for path, source in (
            (optimized, ResultSource.BACKEND_OPTIMIZED),
            (plain, ResultSource.BACKEND_PLAIN),
        ):
            try:
                data = await self._call(method, path, **kwargs)
                payload = parse_payload(data, source)
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(
                    "entity_store_endpoint_failed",
                    operation=operation,
                    path=path,
                    error=str(e) or type(e).__name__,
                )
                continue

            logger.info(
                "entity_store_query",
                operation=operation,
                source=source.value,
                count=len(payload.entities),
            )
            return payload

        if isinstance(last_error, httpx.HTTPStatusError) and last_error.response.status_code == 429:
            raise ProviderQuotaExceeded(f"entity store rate limited on {operation}") from last_error
        raise BackendUnavailable(f"entity store {operation} unavailable") from last_error

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._http.request(method, f"{self.base_url}{path}", **kwargs)
        response.raise_for_status()
        return response.json()
