from datetime import datetime

import pytest

from calliope.query.compiler import CompiledQuery, QueryConditionList, compile_query
from calliope.query.conditions import (
    ALTITUDE_FIELD,
    COLLECTION_FIELD,
    DateIntervalCondition,
    PolygonCondition,
    QueryFilter,
    RangeCondition,
    TermsCondition,
)


def _ids(backend, query: CompiledQuery):
    resp = backend.search("metadata", {"size": 100, "query": query.body})
    return sorted(hit["_id"] for hit in resp["hits"]["hits"])


def test_empty_list_compiles_to_match_all():
    query = compile_query([])
    assert query.body == {"match_all": {}}
    assert query.is_match_all


def test_enabled_conditions_are_anded_in_a_filter():
    terms = TermsCondition(COLLECTION_FIELD, ["c-1"])
    rng = RangeCondition(ALTITUDE_FIELD, 1000.0, 2000.0)
    query = compile_query([terms, rng])
    assert query.body == {"bool": {"filter": [
        {"terms": {"collectionID": ["c-1"]}},
        {"range": {"imageMetadata.altitude": {"gte": 1000.0, "lte": 2000.0}}},
    ]}}


def test_disabled_condition_is_equivalent_to_omitting_it():
    terms = TermsCondition(COLLECTION_FIELD, ["c-1"])
    rng = RangeCondition(ALTITUDE_FIELD, minimum=1000.0)
    rng.enabled = False
    assert compile_query([terms, rng]) == compile_query([terms])

    terms.enabled = False
    assert compile_query([terms, rng]) == compile_query([])


@pytest.mark.parametrize("condition", [
    TermsCondition(COLLECTION_FIELD, []),
    RangeCondition(ALTITUDE_FIELD),
    DateIntervalCondition(),
    PolygonCondition([(1.0, 1.0), (2.0, 2.0)]),
    PolygonCondition([(1.0, 1.0), (2.0, 2.0), (1.0, 1.0), (2.0, 2.0)]),
    PolygonCondition([(0.0, 0.0), (1.0, 1.0), (2.0, 2.0)]),   # collinear
])
def test_incomplete_conditions_contribute_nothing(condition):
    assert condition.fragment() is None
    assert compile_query([condition]).is_match_all


def test_polygon_ring_is_closed_and_lon_lat():
    cond = PolygonCondition([(39.0, -106.0), (39.0, -104.0), (41.0, -104.0)])
    shape = cond.fragment()["geo_shape"]["imageMetadata.position"]
    assert shape["relation"] == "intersects"
    ring = shape["shape"]["coordinates"][0]
    assert ring[0] == [-106.0, 39.0]
    assert ring[0] == ring[-1]
    assert len(ring) == 4


def test_date_interval_uses_index_format():
    cond = DateIntervalCondition(start=datetime(2019, 6, 1), end=datetime(2019, 6, 30, 23, 59, 59))
    assert cond.fragment() == {"range": {"imageMetadata.dateTaken": {
        "gte": "2019-06-01 00:00:00",
        "lte": "2019-06-30 23:59:59",
        "format": "yyyy-MM-dd HH:mm:ss",
    }}}


def test_condition_order_does_not_change_results(backend):
    terms = TermsCondition(COLLECTION_FIELD, ["c-1", "c-2"])
    rng = RangeCondition(ALTITUDE_FIELD, minimum=1600.0)
    poly = PolygonCondition([(39.0, -106.0), (39.0, -104.0), (41.0, -104.0), (41.0, -106.0)])
    forward = _ids(backend, compile_query([terms, rng, poly]))
    backward = _ids(backend, compile_query([poly, rng, terms]))
    assert forward == backward == ["img-1", "img-2", "img-3"]


def test_date_interval_filters_documents(backend):
    cond = DateIntervalCondition(start=datetime(2020, 1, 1))
    assert _ids(backend, compile_query([cond])) == ["img-4"]


def test_compiled_query_is_isolated_from_later_edits():
    terms = TermsCondition(COLLECTION_FIELD, ["c-1"])
    query = compile_query([terms])
    terms.values.append("c-2")
    query.body["bool"]["filter"].clear()
    assert query.body == {"bool": {"filter": [{"terms": {"collectionID": ["c-1"]}}]}}

    poly = PolygonCondition([(39.0, -106.0), (39.0, -104.0), (41.0, -104.0)])
    query = compile_query([poly])
    poly.add_point(41.0, -106.0)
    ring = query.body["bool"]["filter"][0]["geo_shape"]["imageMetadata.position"]["shape"]["coordinates"][0]
    assert len(ring) == 4


def test_catalogue_creates_matching_condition_types():
    assert isinstance(QueryFilter.ALTITUDE.create_instance(), RangeCondition)
    assert isinstance(QueryFilter.DATE_TAKEN.create_instance(), DateIntervalCondition)
    assert isinstance(QueryFilter.MAP_POLYGON.create_instance(), PolygonCondition)
    camera = QueryFilter.CAMERA_MODEL.create_instance()
    assert isinstance(camera, TermsCondition)
    assert camera.field == "imageMetadata.cameraModel"
    assert str(QueryFilter.SITE_CODE) == "Site"


def test_condition_list_notifies_listeners():
    events = []
    conditions = QueryConditionList()
    conditions.add_listener(lambda cond, added: events.append((cond, added)))
    terms = TermsCondition(COLLECTION_FIELD, ["c-1"])
    poly = PolygonCondition()

    conditions.append(terms)
    conditions.insert(0, poly)
    conditions.remove(terms)

    assert events == [(terms, True), (poly, True), (terms, False)]
    assert list(conditions) == [poly]
    assert conditions.compile().is_match_all


def test_each_compile_is_a_new_object():
    conditions = QueryConditionList([TermsCondition(COLLECTION_FIELD, ["c-1"])])
    first = conditions.compile()
    second = conditions.compile()
    assert first == second
    assert first is not second
