# geosearch/services/fallback_search.py
# Client-side search over the cached full entity list. No network I/O happens here:
# this is the last stage before an empty result.

import re
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog

from geosearch.models.dto import Coordinate, DistanceStatus, EnrichedEntity, Entity, SearchFilters, SortBy
from geosearch.services.distance_calculator import DistanceCalculator, compass_direction, distance_calculator

logger = structlog.get_logger(__name__)

NUMERIC_POSTAL_QUERY = re.compile(r"^\d{4,6}$")

# Postal-code relevance weights
EXACT_MATCH_SCORE = 100
PREFIX_MATCH_SCORE = 50
AREA_MATCH_SCORE = 25
VERIFIED_SCORE = 20
RATING_WEIGHT = 5


def _matches_postal_code(entity: Entity, code: str) -> bool:
    entity_code = entity.postal_code

    if entity_code == code:
        return True
    if code in entity.location.lower() or code in entity.address.lower():
        return True
    # Area code: first three digits
    if len(entity_code) >= 3 and len(code) >= 3 and entity_code[:3] == code[:3]:
        return True
    # Prefix: an entity without a postal code matches any 4+ digit query
    if len(code) >= 4:
        if entity_code.startswith(code) or code.startswith(entity_code[:4]):
            return True
    return False


def postal_code_score(entity: Entity, code: str) -> float:
    """Relevance of an entity for a postal-code query. Bonuses are cumulative."""
    entity_code = entity.postal_code
    score = 0.0
    if entity_code == code:
        score += EXACT_MATCH_SCORE
    if entity_code.startswith(code):
        score += PREFIX_MATCH_SCORE
    if entity_code[:3] == code[:3]:
        score += AREA_MATCH_SCORE
    if entity.verified:
        score += VERIFIED_SCORE
    score += (entity.rating or 0) * RATING_WEIGHT
    return score


def filter_and_score_by_postal_code(entities: Sequence[Entity], code: str) -> List[Entity]:
    """
    Entities matching a postal code, most relevant first.

    The order never depends on distance: postal-code results are defined to be
    location-independent. Ties keep their original order.
    """
    code = str(code or "").strip()
    if not code:
        return []

    matches = [e for e in entities if _matches_postal_code(e, code)]
    ranked = sorted(matches, key=lambda e: postal_code_score(e, code), reverse=True)

    logger.debug(
        "postal_code_fallback",
        postal_code=code,
        candidates=len(entities),
        matches=len(ranked),
        exact=sum(1 for e in ranked if e.postal_code == code),
    )
    return ranked


def filter_by_radius(
    entities: Sequence[Entity],
    origin: Coordinate,
    radius_km: float,
    calculator: Optional[DistanceCalculator] = None,
) -> List[EnrichedEntity]:
    """Entities within `radius_km` of `origin`, nearest first."""
    calculator = calculator or distance_calculator
    if origin is None or not origin.is_valid():
        return []

    within: List[Tuple[float, EnrichedEntity]] = []
    for entity in entities:
        dist = calculator.distance(origin, entity.coordinate)
        if dist is None or dist > radius_km:
            continue
        bearing = calculator.bearing(origin, entity.coordinate)
        enriched = EnrichedEntity.from_entity(entity).with_updates(
            distance=dist,
            bearing=bearing,
            compass_direction=compass_direction(bearing),
            distance_status=DistanceStatus.OK,
        )
        within.append((dist, enriched))

    within.sort(key=lambda pair: pair[0])
    return [enriched for _, enriched in within]


def _text_weight(entity: Entity, needle: str) -> int:
    if needle in entity.name.lower():
        return 3
    tags = [c.lower() for c in entity.categories] + [entity.specialization.lower()]
    if any(needle in tag for tag in tags):
        return 2
    haystack = (entity.address, entity.location, entity.description, entity.postal_code)
    if any(needle in field.lower() for field in haystack):
        return 1
    return 0


def filter_by_text(entities: Sequence[Entity], query: str) -> List[Entity]:
    """Case-insensitive match over the searchable text fields; name hits rank first."""
    query = (query or "").strip()
    if not query:
        return []
    if NUMERIC_POSTAL_QUERY.match(query):
        # A bare 4-6 digit query is almost always a postal code
        return filter_and_score_by_postal_code(entities, query)

    needle = query.lower()
    weighted: List[Tuple[int, Entity]] = []
    for entity in entities:
        weight = _text_weight(entity, needle)
        if weight > 0:
            weighted.append((weight, entity))
    weighted.sort(key=lambda pair: pair[0], reverse=True)
    return [e for _, e in weighted]


def _distance_of(entity: Entity) -> Optional[float]:
    if not isinstance(entity, EnrichedEntity):
        return None
    if entity.road_distance is not None:
        return entity.road_distance
    return entity.distance


def _distance_sort_key(entity: Entity) -> float:
    dist = _distance_of(entity)
    return dist if dist is not None else float("inf")


def filter_entities(entities: Iterable[Entity], filters: Optional[SearchFilters]) -> List[Entity]:
    """Apply the optional attribute filters of a search."""
    filtered = list(entities)
    if filters is None or filters.is_empty():
        return filtered

    if filters.verified is not None:
        filtered = [e for e in filtered if e.verified == filters.verified]

    if filters.min_rating:
        filtered = [e for e in filtered if (e.rating or 0) >= filters.min_rating]

    if filters.categories:
        wanted = [c.lower() for c in filters.categories]
        filtered = [
            e for e in filtered
            if any(w in c.lower() for w in wanted for c in e.categories)
        ]

    if filters.specialization:
        spec = filters.specialization.lower()
        filtered = [e for e in filtered if spec in e.specialization.lower()]

    if filters.status and filters.status.lower() != "all":
        status = filters.status.lower()
        filtered = [e for e in filtered if (e.status or "unknown").lower() == status]

    if filters.emergency_services:
        filtered = [e for e in filtered if e.emergency_services]

    if filters.insurance_accepted:
        filtered = [e for e in filtered if e.insurance_accepted]

    if filters.max_distance_km:
        filtered = [
            e for e in filtered
            if _distance_of(e) is not None and _distance_of(e) <= filters.max_distance_km
        ]

    return filtered


def sort_entities(entities: Iterable[Entity], sort_by: SortBy = SortBy.RATING) -> List[Entity]:
    """Order a list by one attribute; RELEVANCE keeps the incoming order."""
    items = list(entities)
    sort_by = SortBy(sort_by)

    if sort_by is SortBy.DISTANCE:
        return sorted(items, key=_distance_sort_key)
    if sort_by is SortBy.RATING:
        return sorted(items, key=lambda e: e.rating or 0, reverse=True)
    if sort_by is SortBy.NAME:
        return sorted(items, key=lambda e: e.name.lower())
    if sort_by is SortBy.VERIFIED:
        return sorted(items, key=lambda e: not e.verified)
    if sort_by is SortBy.REVIEWS:
        return sorted(items, key=lambda e: e.review_count or 0, reverse=True)
    return items
