from geosearch.models.dto import Coordinate, DistanceStatus, EnrichedEntity, Entity, SearchFilters, SortBy
from geosearch.services.distance_calculator import DistanceCalculator
from geosearch.services.fallback_search import (
    filter_and_score_by_postal_code,
    filter_by_radius,
    filter_by_text,
    filter_entities,
    postal_code_score,
    sort_entities,
)

ORIGIN = Coordinate(latitude=12.9716, longitude=77.5946)


def entity(**data) -> Entity:
    return Entity.model_validate(data)


def ids(entities):
    return [e.id for e in entities]


def test_postal_code_scenario_orders_by_cumulative_score():
    entities = [
        entity(id=1, pincode="560001", rating=4.5, verified=True),
        entity(id=2, pincode="560001", rating=3.0, verified=False),
        entity(id=3, pincode="560002", rating=5.0, verified=False),
    ]

    ranked = filter_and_score_by_postal_code(entities, "560001")

    assert ids(ranked) == ["1", "2", "3"]
    assert postal_code_score(entities[0], "560001") == 217.5
    assert postal_code_score(entities[1], "560001") == 190.0
    assert postal_code_score(entities[2], "560001") == 50.0


def test_postal_code_matches_address_text():
    entities = [
        entity(id="a", pincode="110001", address="12 MG Road, Bangalore 560001"),
        entity(id="b", pincode="110001", address="Connaught Place"),
    ]
    assert ids(filter_and_score_by_postal_code(entities, "560001")) == ["a"]


def test_postal_code_prefix_match():
    entities = [entity(id="a", pincode="400053"), entity(id="b", pincode="700001")]
    assert ids(filter_and_score_by_postal_code(entities, "4000")) == ["a"]


def test_entity_without_postal_code_matches_any_prefix_query_last():
    entities = [entity(id="blank", pincode=""), entity(id="real", pincode="560001"), entity(id="none")]

    assert ids(filter_and_score_by_postal_code(entities, "5600")) == ["real", "blank", "none"]
    assert postal_code_score(entities[0], "5600") == 0


def test_entity_without_postal_code_needs_four_digits():
    entities = [entity(id="blank", pincode=""), entity(id="real", pincode="560001")]
    assert ids(filter_and_score_by_postal_code(entities, "560")) == ["real"]


def test_empty_postal_code_gives_nothing():
    assert filter_and_score_by_postal_code([entity(id=1, pincode="560001")], "  ") == []


def test_postal_code_ties_keep_input_order():
    entities = [entity(id=i, pincode="560001") for i in ("x", "y", "z")]
    assert ids(filter_and_score_by_postal_code(entities, "560001")) == ["x", "y", "z"]


def test_filter_by_radius_keeps_nearest_first():
    entities = [
        entity(id="far", lat=12.9716 + 0.2, lng=77.5946),
        entity(id="mid", lat=12.9716 + 0.05, lng=77.5946),
        entity(id="near", lat=12.9716 + 0.01, lng=77.5946),
        entity(id="unplaced"),
        entity(id="bad", lat=120, lng=77.5946),
    ]

    within = filter_by_radius(entities, ORIGIN, 10, DistanceCalculator())

    assert ids(within) == ["near", "mid"]
    assert all(isinstance(e, EnrichedEntity) for e in within)
    assert within[0].distance < within[1].distance <= 10
    assert within[0].compass_direction == "N"
    assert within[0].distance_status == DistanceStatus.OK


def test_filter_by_radius_invalid_origin():
    assert filter_by_radius([entity(id=1, lat=1, lng=1)], Coordinate(latitude=99, longitude=0), 10) == []


def test_filter_by_text_weights_name_over_tags_over_address():
    entities = [
        entity(id="addr", name="City Care", address="Dental Lane"),
        entity(id="tag", name="Smile Point", services=["dental", "ortho"]),
        entity(id="name", name="Dental Studio"),
        entity(id="miss", name="Eye Clinic"),
    ]
    assert ids(filter_by_text(entities, "DENTAL")) == ["name", "tag", "addr"]


def test_filter_by_text_numeric_query_uses_postal_code_rules():
    entities = [entity(id="a", pincode="560001"), entity(id="b", name="560001 Tower", pincode="999999")]
    assert ids(filter_by_text(entities, "560001")) == ["a"]


def test_filter_entities_attribute_filters():
    entities = [
        entity(id="a", verified=True, rating=4.5, services=["Dental"], specialization="Orthodontics", status="open"),
        entity(id="b", verified=False, rating=4.8, services=["Eye"], status="closed"),
        entity(id="c", verified=True, rating=3.0, services=["dental surgery"]),
    ]

    assert ids(filter_entities(entities, SearchFilters(verified=True))) == ["a", "c"]
    assert ids(filter_entities(entities, SearchFilters(min_rating=4))) == ["a", "b"]
    assert ids(filter_entities(entities, SearchFilters(categories=["dental"]))) == ["a", "c"]
    assert ids(filter_entities(entities, SearchFilters(specialization="ortho"))) == ["a"]
    assert ids(filter_entities(entities, SearchFilters(status="open"))) == ["a"]
    assert ids(filter_entities(entities, SearchFilters(status="all"))) == ["a", "b", "c"]
    assert ids(filter_entities(entities, None)) == ["a", "b", "c"]


def test_filter_entities_emergency_and_insurance():
    entities = [
        entity(id="a", emergencyServices=True, insuranceAccepted=True),
        entity(id="b", emergency_services=True, insurance_accepted=None),
        entity(id="c", emergency=False, insurance_accepted=True),
        entity(id="d"),
    ]

    assert ids(filter_entities(entities, SearchFilters(emergency_services=True))) == ["a", "b"]
    assert ids(filter_entities(entities, SearchFilters(insurance_accepted=True))) == ["a", "c"]
    assert ids(filter_entities(entities, SearchFilters(emergency_services=True, insurance_accepted=True))) == ["a"]
    assert ids(filter_entities(entities, SearchFilters(emergency_services=False))) == ["a", "b", "c", "d"]


def test_filter_entities_max_distance_needs_a_distance():
    near = EnrichedEntity.from_entity(entity(id="near")).with_updates(distance=2.0)
    far = EnrichedEntity.from_entity(entity(id="far")).with_updates(distance=20.0)
    plain = entity(id="plain")

    assert ids(filter_entities([near, far, plain], SearchFilters(max_distance_km=5))) == ["near"]


def test_sort_entities():
    entities = [
        entity(id="a", name="beta", rating=3.0, review_count=10, verified=False),
        entity(id="b", name="Alpha", rating=4.0, review_count=2, verified=True),
        entity(id="c", name="gamma", rating=5.0, review_count=7, verified=False),
    ]

    assert ids(sort_entities(entities, SortBy.RATING)) == ["c", "b", "a"]
    assert ids(sort_entities(entities, SortBy.NAME)) == ["b", "a", "c"]
    assert ids(sort_entities(entities, SortBy.REVIEWS)) == ["a", "c", "b"]
    assert ids(sort_entities(entities, SortBy.VERIFIED)) == ["b", "a", "c"]
    assert ids(sort_entities(entities, SortBy.RELEVANCE)) == ["a", "b", "c"]


def test_sort_by_distance_puts_unknown_last():
    near = EnrichedEntity.from_entity(entity(id="near")).with_updates(distance=1.0)
    road = EnrichedEntity.from_entity(entity(id="road")).with_updates(distance=9.0, road_distance=0.5)
    unknown = entity(id="unknown")

    assert ids(sort_entities([unknown, near, road], SortBy.DISTANCE)) == ["road", "near", "unknown"]
