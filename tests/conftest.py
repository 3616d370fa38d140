from typing import Dict, List, Optional

import pytest

from geosearch.core.config import Settings
from geosearch.core.errors import BackendUnavailable
from geosearch.models.dto import BackendPayload, Coordinate, Entity, ResultSource
from geosearch.services.cache_layer import CacheLayer
from geosearch.services.distance_calculator import DistanceCalculator
from geosearch.services.location import StaticLocationProvider
from geosearch.services.orchestrator import SearchOrchestrator

BANGALORE = Coordinate(latitude=12.9716, longitude=77.5946)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEntityStore:
    """In-memory entity store. Set an operation in `failing` to make it raise."""

    def __init__(self, entities: Optional[List[Entity]] = None):
        self.entities = list(entities or [])
        self.failing: set = set()
        self.calls: Dict[str, int] = {}
        self.responses: Dict[str, BackendPayload] = {}

    def _answer(self, operation: str, default: List[Entity]) -> BackendPayload:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        if operation in self.failing:
            raise BackendUnavailable(f"{operation} down")
        if operation in self.responses:
            return self.responses[operation]
        return BackendPayload(entities=default, total=len(default), source=ResultSource.BACKEND_OPTIMIZED)

    async def get_all(self) -> BackendPayload:
        return self._answer("all", self.entities)

    async def get_nearby(self, origin, radius_km, limit=None, is_entitled=False) -> BackendPayload:
        return self._answer("nearby", self.entities)

    async def get_by_postal_code(self, code, limit=None, is_entitled=False) -> BackendPayload:
        return self._answer("postal_code", [e for e in self.entities if e.postal_code == code])

    async def get_by_text(self, query, limit=None, is_entitled=False) -> BackendPayload:
        return self._answer("text", [e for e in self.entities if query.lower() in e.name.lower()])


def make_entity(id, lat=None, lng=None, **fields) -> Entity:
    data = {"id": id, "name": fields.pop("name", f"Clinic {id}"), "lat": lat, "lng": lng}
    data.update(fields)
    return Entity.model_validate(data)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        GEOCODING_API_KEY=None,
        DISTANCE_MATRIX_API_KEY=None,
        FREE_TIER_LIMIT=3,
        CACHE_TTL_SECONDS=300,
        DEFAULT_LATITUDE=None,
        DEFAULT_LONGITUDE=None,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def nearby_entities() -> List[Entity]:
    # Roughly 1, 3, 6 and 40 km north of central Bangalore
    return [
        make_entity("far", 13.3316, 77.5946, rating=5.0, postal_code="561203"),
        make_entity("mid", 13.0256, 77.5946, rating=3.0, postal_code="560024"),
        make_entity("near", 12.9806, 77.5946, rating=4.0, postal_code="560001", verified=True),
        make_entity("closer", 12.9986, 77.5946, rating=4.8, postal_code="560003"),
        make_entity("nowhere", None, None, rating=4.9, postal_code="560001"),
    ]


@pytest.fixture
def entity_store(nearby_entities) -> FakeEntityStore:
    return FakeEntityStore(nearby_entities)


@pytest.fixture
def orchestrator(entity_store, test_settings, clock) -> SearchOrchestrator:
    return SearchOrchestrator(
        entity_store=entity_store,
        cache=CacheLayer(ttl=300, clock=clock),
        calculator=DistanceCalculator(),
        location_provider=StaticLocationProvider(None),
        config=test_settings,
    )
