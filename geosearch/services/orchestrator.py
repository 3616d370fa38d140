"""Search orchestration: classify, dispatch, enrich, sort, gate and respond.

Dispatch walks a fixed fallback chain per query shape:

    entity store (optimized, then plain)
    -> client-side derivation over the cached full entity list
    -> empty result

Every stage failure is logged and turns into "try the next stage". The only
failure a caller ever sees is an empty envelope with ``source=empty``.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

import structlog

from geosearch.core.config import Settings, settings
from geosearch.core.errors import InvalidInput, NoLocation, SearchError, SearchExhausted
from geosearch.models.dto import (
    AddressLookup,
    BackendPayload,
    Coordinate,
    DistanceStatus,
    EnrichedEntity,
    Entity,
    ResultEnvelope,
    ResultSource,
    SearchOptions,
    SearchType,
)
from geosearch.services.access_gate import AccessTierGate
from geosearch.services.cache_layer import CacheLayer, CacheName, CacheRead, TTLCache, query_key
from geosearch.services.distance_calculator import DistanceCalculator, compass_direction, distance_calculator
from geosearch.services.distance_matrix import RemoteDistanceEnricher
from geosearch.services.entity_store import EntityStore, EntityStoreClient
from geosearch.services.fallback_search import (
    filter_and_score_by_postal_code,
    filter_by_radius,
    filter_by_text,
    filter_entities,
    sort_entities,
)
from geosearch.services.geocoding import Geocoder
from geosearch.services.location import LocationProvider, StaticLocationProvider

logger = structlog.get_logger(__name__)

T = TypeVar("T")

FULL_LIST_KEY = "all"
CURRENT_LOCATION_KEY = "current"


@dataclass(frozen=True)
class DispatchOutcome:
    """Entities produced by one stage of the fallback chain."""
    entities: List[Entity] = field(default_factory=list)
    source: ResultSource = ResultSource.EMPTY
    user_location: Optional[Coordinate] = None


def sort_by_proximity(entities: Sequence[EnrichedEntity]) -> List[EnrichedEntity]:
    """Nearest first; entities without a distance go last, ties by higher rating."""
    return sorted(
        entities,
        key=lambda e: (e.distance is None, e.distance or 0.0, -(e.rating or 0.0)),
    )


class SearchOrchestrator:
    """Top-level search entry point.

    Holds no per-request state. The cache layer, the distance memo and the
    geocoder memo are shared by concurrent searches.
    """

    def __init__(
        self,
        entity_store: EntityStore,
        cache: Optional[CacheLayer] = None,
        calculator: Optional[DistanceCalculator] = None,
        enricher: Optional[RemoteDistanceEnricher] = None,
        geocoder: Optional[Geocoder] = None,
        location_provider: Optional[LocationProvider] = None,
        gatekeeper: Optional[AccessTierGate] = None,
        config: Settings = settings,
    ) -> None:
        self.entity_store = entity_store
        self.cache = cache or CacheLayer(config.CACHE_TTL_SECONDS)
        self.calculator = calculator or distance_calculator
        self.enricher = enricher
        self.geocoder = geocoder
        self.location_provider = location_provider
        self.gatekeeper = gatekeeper or AccessTierGate(config.FREE_TIER_LIMIT)
        self.config = config
        self._location_cache = TTLCache("current-location", config.LOCATION_CACHE_TTL)

    @classmethod
    def create(cls, config: Settings = settings) -> "SearchOrchestrator":
        """Wire the default collaborators from settings.

        Geocoding and road distances are only enabled when their API keys are set.
        """
        geocoder = None
        if config.GEOCODING_API_KEY:
            geocoder = Geocoder(
                api_key=config.GEOCODING_API_KEY,
                url=config.GEOCODING_URL,
                region=config.GEOCODING_REGION,
                timeout=config.GEOCODING_TIMEOUT,
                max_retries=config.GEOCODING_MAX_RETRIES,
                initial_backoff=config.GEOCODING_INITIAL_BACKOFF,
            )
        enricher = None
        if config.DISTANCE_MATRIX_API_KEY:
            enricher = RemoteDistanceEnricher(
                api_key=config.DISTANCE_MATRIX_API_KEY,
                url=config.DISTANCE_MATRIX_URL,
                batch_size=config.DISTANCE_BATCH_SIZE,
                batch_delay=config.DISTANCE_BATCH_DELAY,
                timeout=config.DISTANCE_MATRIX_TIMEOUT,
            )

        return cls(
            entity_store=EntityStoreClient(base_url=config.ENTITY_STORE_URL, timeout=config.BACKEND_TIMEOUT),
            cache=CacheLayer(config.CACHE_TTL_SECONDS),
            calculator=DistanceCalculator(),
            enricher=enricher,
            geocoder=geocoder,
            location_provider=StaticLocationProvider.from_settings(config),
            config=config,
        )

    async def aclose(self) -> None:
        for resource in (self.entity_store, self.enricher):
            aclose = getattr(resource, "aclose", None)
            if aclose is not None:
                await aclose()

    # --- Classify ---

    def classify(self, options: SearchOptions) -> SearchType:
        """Pick the search type; an explicit type always wins over inference."""
        if options.search_type is not SearchType.AUTO:
            return options.search_type

        code = options.postal_code
        if len(code) >= 6 and code.isdigit():
            return SearchType.POSTAL_CODE
        if options.location is not None and options.location.is_valid():
            return SearchType.NEARBY
        if options.query.strip():
            return SearchType.TEXT
        return SearchType.ALL

    # --- Public operations ---

    async def search(self, options: Optional[SearchOptions] = None) -> ResultEnvelope:
        """Run one search. Always returns an envelope; backend failures only shrink it."""
        options = options or SearchOptions()
        started = time.perf_counter()

        search_type = self.classify(options)
        user_location = options.location if options.location is not None and options.location.is_valid() else None
        log = logger.bind(
            search_type=search_type.value,
            tier=self.gatekeeper.tier_for(options.is_entitled).value,
        )

        if search_type is SearchType.NEARBY and user_location is None:
            user_location = await self._resolve_origin(options)
            if user_location is None:
                log.info("search_demoted", reason="no_location", to=SearchType.ALL.value)
                search_type = SearchType.ALL
        if search_type is SearchType.TEXT and not options.query.strip():
            search_type = SearchType.ALL

        cap = self._candidate_cap(search_type, options)
        deadline = self._deadline(options.timeout_seconds)

        try:
            outcome = await self._dispatch(search_type, options, user_location, cap, deadline)
        except SearchError as e:
            log.warning("search_exhausted", error=str(e))
            outcome = DispatchOutcome()

        user_location = user_location or outcome.user_location

        # Enrich (local), filter, sort, cap
        candidates = self._with_local_distances(outcome.entities, user_location)
        candidates = filter_entities(candidates, options.filters)
        # Postal-code and text results are relevance-ordered and never re-sorted by distance
        if user_location is not None and search_type in (SearchType.NEARBY, SearchType.ALL):
            candidates = sort_by_proximity(candidates)
        candidates = candidates[:cap]

        gated = self.gatekeeper.gate(candidates, options.is_entitled, min(self.config.FREE_TIER_LIMIT, cap))
        visible: List[EnrichedEntity] = list(gated.visible)

        enriched = False
        if user_location is not None and options.use_remote_enrichment and self.enricher is not None and visible:
            visible = await self._remote_enrich(user_location, visible, options)
            enriched = any(e.road_distance is not None for e in visible)

        envelope = ResultEnvelope(
            entities=visible,
            total=len(candidates),
            visible_count=len(visible),
            hidden_count=gated.hidden_count,
            has_more=gated.hidden_count > 0,
            source=outcome.source,
            search_type=search_type,
            user_location=user_location,
            enriched=enriched,
        )
        log.info(
            "search_completed",
            source=envelope.source.value,
            total=envelope.total,
            visible=envelope.visible_count,
            hidden=envelope.hidden_count,
            enriched=enriched,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return envelope

    async def get_current_location(self) -> Coordinate:
        """
        The caller's position, cached briefly.

        Raises:
            NoLocation: If no provider is configured, it fails, or it times out.
        """
        cached = self._location_cache.peek(CURRENT_LOCATION_KEY)
        if cached is not None and not cached.stale:
            return cached.value

        if self.location_provider is None:
            raise NoLocation("no location provider configured")
        try:
            coordinate = await asyncio.wait_for(
                self.location_provider.current_location(),
                self.config.GEOLOCATION_TIMEOUT,
            )
        except asyncio.TimeoutError as e:
            raise NoLocation("location lookup timed out") from e

        self._location_cache.set(CURRENT_LOCATION_KEY, coordinate)
        return coordinate

    async def describe_location(self, coordinate: Coordinate) -> Optional[AddressLookup]:
        """
        Reverse geocode a coordinate. None when geocoding is off or finds nothing.

        Raises:
            InvalidInput: If the coordinate is out of range or not finite.
        """
        if coordinate is None or not coordinate.is_valid():
            raise InvalidInput(f"invalid coordinate: {coordinate}")
        if self.geocoder is None:
            return None
        return await self.geocoder.coordinate_to_address(coordinate)

    def clear_cache(self, scope: str = "all") -> int:
        dropped = self.cache.clear(scope)
        if scope == "all":
            dropped += self._location_cache.clear()
        return dropped

    def cache_stats(self) -> Dict[str, Any]:
        stats = self.cache.stats()
        stats["distance_memo"] = self.calculator.cache_stats()["size"]
        stats["current_location_cached"] = len(self._location_cache) > 0
        return stats

    # --- Dispatch ---

    async def _dispatch(
        self,
        search_type: SearchType,
        options: SearchOptions,
        origin: Optional[Coordinate],
        cap: int,
        deadline: Optional[float],
    ) -> DispatchOutcome:
        entitled = options.is_entitled

        if search_type is SearchType.NEARBY:
            key = query_key("nearby", location=origin, radius=options.radius_km, entitled=entitled, limit=cap)
            return await self._cached_chain(
                CacheName.LOCATION,
                key,
                lambda: self.entity_store.get_nearby(origin, options.radius_km, cap, entitled),
                lambda entities: filter_by_radius(entities, origin, options.radius_km, self.calculator),
                deadline,
            )

        if search_type is SearchType.POSTAL_CODE:
            code = options.postal_code or options.query.strip()
            if not code:
                raise SearchExhausted("postal-code search without a postal code")
            key = query_key("postal", code=code, entitled=entitled, limit=cap)
            return await self._cached_chain(
                CacheName.POSTAL_CODE,
                key,
                lambda: self.entity_store.get_by_postal_code(code, cap, entitled),
                lambda entities: filter_and_score_by_postal_code(entities, code),
                deadline,
            )

        if search_type is SearchType.TEXT:
            query = options.query.strip()
            key = query_key("text", q=query, entitled=entitled, limit=cap)
            return await self._cached_chain(
                CacheName.TEXT,
                key,
                lambda: self.entity_store.get_by_text(query, cap, entitled),
                lambda entities: filter_by_text(entities, query),
                deadline,
            )

        key = query_key("all", filters=options.filters, sort=options.sort_by, entitled=entitled, limit=cap)
        return await self.cache.get_or_compute(
            CacheName.FILTERED,
            key,
            lambda: self._all_entities_outcome(options, deadline),
        )

    async def _cached_chain(
        self,
        cache_name: CacheName,
        key: str,
        backend_call: Callable[[], Awaitable[BackendPayload]],
        derive: Callable[[Sequence[Entity]], List[Entity]],
        deadline: Optional[float],
    ) -> DispatchOutcome:
        async def compute() -> DispatchOutcome:
            return await self._run_chain(cache_name.value, backend_call, derive, deadline)

        return await self.cache.get_or_compute(cache_name, key, compute)

    async def _run_chain(
        self,
        label: str,
        backend_call: Callable[[], Awaitable[BackendPayload]],
        derive: Callable[[Sequence[Entity]], List[Entity]],
        deadline: Optional[float],
    ) -> DispatchOutcome:
        # Stage 1 + 2: the client itself tries the optimized endpoint, then the plain one
        try:
            payload = await self._bounded(backend_call, deadline)
            return DispatchOutcome(list(payload.entities), payload.source, payload.user_location)
        except Exception as e:
            logger.warning("backend_stage_failed", query=label, error=str(e) or type(e).__name__)

        # Stage 3: derive from the full list
        try:
            full = await self._full_entity_list(deadline)
        except Exception as e:
            raise SearchExhausted(f"{label}: every stage failed") from e

        entities = derive(full.value.entities)
        logger.info("client_fallback_used", query=label, candidates=len(full.value.entities), matches=len(entities))
        return DispatchOutcome(entities, ResultSource.CLIENT_FALLBACK)

    async def _all_entities_outcome(self, options: SearchOptions, deadline: Optional[float]) -> DispatchOutcome:
        try:
            full = await self._full_entity_list(deadline)
        except Exception as e:
            raise SearchExhausted("all: entity list unavailable") from e

        # Distance filtering needs a user location, so it waits until after enrichment
        attribute_filters = options.filters.model_copy(update={"max_distance_km": None})
        entities = sort_entities(filter_entities(full.value.entities, attribute_filters), options.sort_by)
        source = ResultSource.CLIENT_FALLBACK if full.stale else full.value.source
        return DispatchOutcome(entities, source)

    async def _full_entity_list(self, deadline: Optional[float]) -> CacheRead:
        read = await self.cache.read_or_compute(
            CacheName.ENTITIES,
            FULL_LIST_KEY,
            lambda: self._bounded(self.entity_store.get_all, deadline),
        )
        if not read.value.entities:
            raise SearchExhausted("full entity list is empty")
        return read

    # --- Enrich ---

    def _with_local_distances(self, entities: Sequence[Entity], origin: Optional[Coordinate]) -> List[EnrichedEntity]:
        out: List[EnrichedEntity] = []
        for entity in entities:
            enriched = EnrichedEntity.from_entity(entity)
            if origin is not None:
                dist = self.calculator.distance(origin, enriched.coordinate)
                bearing = self.calculator.bearing(origin, enriched.coordinate)
                enriched = enriched.with_updates(
                    distance=dist,
                    bearing=bearing,
                    compass_direction=compass_direction(bearing) or None,
                    distance_status=DistanceStatus.OK if dist is not None else DistanceStatus.UNAVAILABLE,
                )
            out.append(enriched)
        return out

    async def _remote_enrich(
        self,
        origin: Coordinate,
        entities: List[EnrichedEntity],
        options: SearchOptions,
    ) -> List[EnrichedEntity]:
        try:
            return await self.enricher.enrich(origin, entities, options.travel_mode)
        except Exception as e:
            # Great-circle distances are already in place
            logger.warning("remote_enrichment_failed", error=str(e) or type(e).__name__)
            return entities

    # --- Helpers ---

    async def _resolve_origin(self, options: SearchOptions) -> Optional[Coordinate]:
        try:
            return await self.get_current_location()
        except NoLocation as e:
            logger.info("current_location_unavailable", reason=str(e))

        if options.postal_code and self.geocoder is not None:
            try:
                return await self.geocoder.postal_code_to_coordinate(options.postal_code)
            except Exception as e:
                logger.warning(
                    "postal_code_geocoding_failed",
                    postal_code=options.postal_code,
                    error=str(e),
                )
        return None

    def _candidate_cap(self, search_type: SearchType, options: SearchOptions) -> int:
        if options.max_results:
            return options.max_results
        if search_type is SearchType.ALL:
            return self.config.ALL_RESULT_LIMIT
        return self.config.PREMIUM_RESULT_LIMIT

    @staticmethod
    def _deadline(timeout_seconds: Optional[float]) -> Optional[float]:
        if not timeout_seconds:
            return None
        return asyncio.get_running_loop().time() + timeout_seconds

    @staticmethod
    async def _bounded(call: Callable[[], Awaitable[T]], deadline: Optional[float]) -> T:
        """Await `call()` within what is left of the deadline."""
        if deadline is None:
            return await call()
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise asyncio.TimeoutError("search deadline exceeded")
        return await asyncio.wait_for(call(), remaining)
