from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from geosearch.core.config import settings
from geosearch.utils.geodesy import is_valid_lat_lng

# --- Enumerations ---

class SearchType(str, Enum):
    AUTO = "auto"
    NEARBY = "nearby"
    POSTAL_CODE = "postal-code"
    TEXT = "text"
    ALL = "all"

class ResultSource(str, Enum):
    BACKEND_OPTIMIZED = "backend-optimized"
    BACKEND_PLAIN = "backend-plain"
    CLIENT_FALLBACK = "client-fallback"
    EMPTY = "empty"

class DistanceStatus(str, Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"

class DistanceMethod(str, Enum):
    FAST = "fast"  # Haversine
    PRECISE = "precise"  # Vincenty

class TravelMode(str, Enum):
    WALKING = "walking"
    CYCLING = "cycling"
    DRIVING = "driving"
    TRANSIT = "transit"

class SortBy(str, Enum):
    RELEVANCE = "relevance"
    DISTANCE = "distance"
    RATING = "rating"
    NAME = "name"
    VERIFIED = "verified"
    REVIEWS = "reviews"

# --- Core Data Models ---

class Coordinate(BaseModel):
    """A latitude/longitude pair. Out-of-range values are accepted and reported by `is_valid`."""
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., validation_alias=AliasChoices("latitude", "lat"), description="Latitude.")
    longitude: float = Field(..., validation_alias=AliasChoices("longitude", "lng", "lon", "long"), description="Longitude.")

    def is_valid(self) -> bool:
        return is_valid_lat_lng(self.latitude, self.longitude)


# Upstream payloads disagree on field names; first present variant wins.
_FIELD_VARIANTS: Dict[str, tuple] = {
    "id": ("id", "_id", "clinicId", "clinic_id"),
    "latitude": ("latitude", "lat"),
    "longitude": ("longitude", "lng", "long", "lon"),
    "postal_code": ("postal_code", "pincode", "postalCode", "zip"),
    "review_count": ("review_count", "noOfReviews", "reviewCount", "reviews_count"),
    "categories": ("categories", "services", "tags"),
    "status": ("status", "operational_status", "operationalStatus"),
    "emergency_services": ("emergency_services", "emergencyServices", "emergency"),
    "insurance_accepted": ("insurance_accepted", "insuranceAccepted"),
}

_TEXT_FIELDS = ("name", "address", "location", "description", "specialization", "status", "postal_code")

_ENRICHMENT_FIELDS = (
    "distance", "bearing", "compass_direction", "road_distance", "road_distance_text",
    "travel_time", "travel_time_text", "distance_status",
)


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


class Entity(BaseModel):
    """A searchable location record as returned by the entity store."""
    model_config = ConfigDict(frozen=True, extra="allow")

    id: str = Field("", description="Unique entity identifier.")
    name: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    postal_code: str = ""
    address: str = ""
    location: str = Field("", description="Free-text locality/area description.")
    description: str = ""
    categories: List[str] = Field(default_factory=list, description="Services or category tags.")
    specialization: str = ""
    verified: bool = False
    rating: float = 0.0
    review_count: int = 0
    status: str = Field("", description="Operational status label.")
    emergency_services: bool = False
    insurance_accepted: bool = False

    @model_validator(mode="before")
    @classmethod
    def _normalize_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        # Some payloads nest the position under "location"
        nested = data.get("location")
        if isinstance(nested, dict):
            data.pop("location")
            data.setdefault("latitude", nested.get("lat", nested.get("latitude")))
            data.setdefault("longitude", nested.get("lng", nested.get("longitude")))

        for canonical, variants in _FIELD_VARIANTS.items():
            value = None
            for variant in variants:
                if variant in data:
                    candidate = data.pop(variant)
                    if value is None and candidate is not None:
                        value = candidate
            if value is not None:
                data[canonical] = value

        if "id" in data:
            data["id"] = str(data["id"])
        for key in ("latitude", "longitude"):
            if key in data:
                data[key] = _to_float(data[key])

        categories = data.get("categories")
        if isinstance(categories, str):
            data["categories"] = [c.strip() for c in categories.split(",") if c.strip()]
        elif isinstance(categories, (list, tuple)):
            data["categories"] = [str(c) for c in categories if c]

        rating = _to_float(data.get("rating"))
        data["rating"] = rating if rating is not None else 0.0
        reviews = _to_float(data.get("review_count"))
        data["review_count"] = int(reviews) if reviews is not None else 0
        for key in ("verified", "emergency_services", "insurance_accepted"):
            if data.get(key) is None:
                data.pop(key, None)

        for key in _TEXT_FIELDS:
            if data.get(key) is None:
                data.pop(key, None)
            else:
                data[key] = str(data[key]).strip()
        return data

    @property
    def coordinate(self) -> Optional[Coordinate]:
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinate(latitude=self.latitude, longitude=self.longitude)


class EnrichedEntity(Entity):
    """An Entity plus computed distance data. Built by copying, never by mutation."""
    distance: Optional[float] = Field(None, description="Great-circle distance from the user (km).")
    bearing: Optional[float] = None
    compass_direction: Optional[str] = None
    road_distance: Optional[float] = Field(None, description="Provider road distance (km).")
    road_distance_text: Optional[str] = None
    travel_time: Optional[float] = Field(None, description="Provider travel time (minutes).")
    travel_time_text: Optional[str] = None
    distance_status: Optional[DistanceStatus] = None

    @classmethod
    def from_entity(cls, entity: Entity) -> "EnrichedEntity":
        if isinstance(entity, cls):
            return entity
        data = {k: v for k, v in entity.model_dump().items() if k not in _ENRICHMENT_FIELDS}
        return cls.model_validate(data)

    def with_updates(self, **fields: Any) -> "EnrichedEntity":
        return self.model_copy(update=fields)


class AddressLookup(BaseModel):
    """Reverse geocoding result."""
    formatted_address: str
    postal_code: Optional[str] = None
    place_id: Optional[str] = None

# --- Search Requests & Responses ---

class SearchFilters(BaseModel):
    verified: Optional[bool] = None
    min_rating: Optional[float] = Field(None, ge=0)
    categories: List[str] = Field(default_factory=list)
    specialization: Optional[str] = None
    status: Optional[str] = Field(None, description="Operational status; 'all' disables the filter.")
    max_distance_km: Optional[float] = Field(None, gt=0)
    emergency_services: bool = Field(False, description="Only entities offering emergency services.")
    insurance_accepted: bool = Field(False, description="Only entities accepting insurance.")

    def is_empty(self) -> bool:
        return self == SearchFilters()


class SearchOptions(BaseModel):
    """Request model for a search."""
    search_type: SearchType = SearchType.AUTO
    query: str = ""
    location: Optional[Coordinate] = None
    postal_code: str = ""
    radius_km: float = Field(default_factory=lambda: settings.DEFAULT_RADIUS_KM, gt=0)
    is_entitled: bool = Field(False, description="Caller holds a paid entitlement.")
    use_remote_enrichment: bool = True
    max_results: Optional[int] = Field(None, ge=1)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    sort_by: SortBy = Field(SortBy.RATING, description="Ordering for 'all' searches without a location.")
    travel_mode: TravelMode = TravelMode.DRIVING
    timeout_seconds: Optional[float] = Field(None, gt=0, description="Overall budget for backend calls.")

    @field_validator("search_type", mode="before")
    @classmethod
    def _accept_pincode_alias(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() == "pincode":
            return SearchType.POSTAL_CODE
        return value

    @field_validator("postal_code", mode="before")
    @classmethod
    def _coerce_postal_code(cls, value: Any) -> Any:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("query", mode="before")
    @classmethod
    def _coerce_query(cls, value: Any) -> Any:
        return "" if value is None else value


class BackendPayload(BaseModel):
    """Entity store answer before gating."""
    entities: List[Entity] = Field(default_factory=list)
    total: int = 0
    source: ResultSource
    user_location: Optional[Coordinate] = None


@dataclass(frozen=True)
class GateResult:
    visible: List[Entity] = field(default_factory=list)
    hidden_count: int = 0


class ResultEnvelope(BaseModel):
    """Public response for a search."""
    entities: List[EnrichedEntity] = Field(default_factory=list)
    total: int = Field(0, description="Candidate count before gating.")
    visible_count: int = 0
    hidden_count: int = 0
    has_more: bool = False
    source: ResultSource = ResultSource.EMPTY
    search_type: SearchType
    user_location: Optional[Coordinate] = None
    enriched: bool = Field(False, description="Provider road distances were applied.")

# --- Error Response Model ---

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="A machine-readable error code.")
    detail: str = Field(..., description="A human-readable explanation.")
    retry_after_seconds: Optional[int] = Field(None, description="Time until retry is allowed (for rate-limiting).")
