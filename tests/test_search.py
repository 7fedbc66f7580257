import pytest

from calliope.errors import CursorError, SearchRequestError
from calliope.search.backend import hits_of, parse_ttl, total_of
from calliope.search.cursor import CursorPaginator
from calliope.search.memory import MemorySearchBackend


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def numbered():
    b = MemorySearchBackend()
    for i in range(25):
        b.index("metadata", f"doc-{i:02d}", {"n": i, "collectionID": "c-1" if i < 20 else "c-2"})
    return b


# ── Memory backend ────────────────────────────────────────────────────

def test_parse_ttl():
    assert parse_ttl("1m") == 60
    assert parse_ttl("30s") == 30
    assert parse_ttl("500ms") == 0.5
    with pytest.raises(ValueError):
        parse_ttl("soon")


def test_terms_and_total(backend):
    resp = backend.search("metadata", {"query": {"terms": {"collectionID": ["c-1"]}}, "size": 0})
    assert total_of(resp) == 3
    assert hits_of(resp) == []


def test_terms_on_id(backend):
    resp = backend.search("metadata", {"query": {"terms": {"_id": ["img-2", "nope"]}}})
    assert [h["_id"] for h in hits_of(resp)] == ["img-2"]


def test_source_projection(backend):
    resp = backend.search("metadata", {
        "query": {"term": {"_id": "img-1"}},
        "_source": {"includes": ["storagePath", "imageMetadata.cameraModel"]},
    })
    assert hits_of(resp)[0]["_source"] == {
        "storagePath": "/iplant/home/drone/flight1/DJI_0001.JPG",
        "imageMetadata": {"cameraModel": "FC6310"},
    }


def test_bounding_box_rejects_inverted_latitudes(backend):
    body = {"query": {"geo_bounding_box": {"imageMetadata.position": {
        "top_left": {"lat": 10.0, "lon": 0.0},
        "bottom_right": {"lat": 20.0, "lon": 30.0},
    }}}}
    with pytest.raises(SearchRequestError) as info:
        backend.search("metadata", body)
    assert info.value.status == 400


def test_bounding_box_across_antimeridian():
    b = MemorySearchBackend()
    b.index("metadata", "fiji", {"p": {"lat": -17.7, "lon": 178.0}})
    b.index("metadata", "samoa", {"p": {"lat": -13.8, "lon": -172.0}})
    b.index("metadata", "perth", {"p": {"lat": -31.9, "lon": 115.8}})
    resp = b.search("metadata", {"query": {"geo_bounding_box": {"p": {
        "top_left": {"lat": 0.0, "lon": 170.0},
        "bottom_right": {"lat": -20.0, "lon": -170.0},
    }}}})
    assert sorted(h["_id"] for h in hits_of(resp)) == ["fiji", "samoa"]


def test_geo_shape_respects_polygon_holes(backend):
    def sites_at(lat, lon):
        resp = backend.search("neon_sites", {"query": {"geo_shape": {"boundary": {
            "shape": {"type": "point", "coordinates": [lon, lat]},
            "relation": "intersects",
        }}}})
        return [h["_id"] for h in hits_of(resp)]

    assert sites_at(40.0, -105.0) == ["s-1"]
    assert sites_at(9.5, 19.5) == ["s-2"]
    assert sites_at(10.0, 20.0) == []


def test_mget_marks_missing_documents(backend):
    docs = backend.mget("metadata", ["img-1", "gone"], includes=["collectionID"])
    assert docs[0]["found"] is True
    assert docs[0]["_source"] == {"collectionID": "c-1"}
    assert docs[1] == {"_index": "metadata", "_id": "gone", "found": False}


def test_msearch_reports_errors_per_request(backend):
    responses = backend.msearch("metadata", [
        {"query": {"match_all": {}}, "size": 1},
        {"query": {"no_such_query": {}}},
    ])
    assert total_of(responses[0]) == 4
    assert responses[1]["status"] == 400
    assert "error" in responses[1]


def test_scroll_expires_after_ttl():
    clock = FakeClock()
    b = MemorySearchBackend(clock=clock)
    for i in range(5):
        b.index("idx", str(i), {})
    resp = b.search("idx", {"size": 2}, scroll="1m")
    clock.now += 61
    with pytest.raises(SearchRequestError) as info:
        b.scroll(resp["_scroll_id"], "1m")
    assert info.value.status == 404


def test_bulk_delete_and_delete(backend):
    assert backend.bulk_delete("metadata", ["img-1", "img-2"]) is True
    assert backend.count("metadata") == 2
    assert backend.delete("collections", "c-1") is True
    assert backend.delete("collections", "c-1") is False


# ── Cursor paginator ──────────────────────────────────────────────────

def test_cursor_pages_then_empty_then_close_once(numbered):
    paginator = CursorPaginator(numbered)
    cursor, page = paginator.open("metadata", None, page_size=10)
    sizes = [len(page)]
    while page:
        page = paginator.advance(cursor)
        sizes.append(len(page))
    assert sizes == [10, 10, 5, 0]
    assert cursor.page_size == 10

    assert paginator.close(cursor) is True
    assert numbered.open_scrolls == 0
    with pytest.raises(CursorError):
        paginator.close(cursor)


def test_advance_after_close_is_an_error(numbered):
    paginator = CursorPaginator(numbered)
    cursor, _ = paginator.open("metadata", None, page_size=10)
    paginator.close(cursor)
    with pytest.raises(CursorError):
        paginator.advance(cursor)


def test_advance_after_expiry_is_an_error(numbered):
    paginator = CursorPaginator(numbered)
    cursor, _ = paginator.open("metadata", None, page_size=10)
    cursor.expires_at = 0.0
    with pytest.raises(CursorError):
        paginator.advance(cursor)
    paginator.close(cursor)


def test_scan_yields_every_document(numbered):
    paginator = CursorPaginator(numbered)
    pages = list(paginator.scan("metadata", {"terms": {"collectionID": ["c-1"]}}, page_size=7))
    assert [len(p) for p in pages] == [7, 7, 6]
    assert numbered.open_scrolls == 0


def test_scan_closes_cursor_when_consumer_raises(numbered):
    paginator = CursorPaginator(numbered)
    pages = paginator.scan("metadata", None, page_size=10)
    with pytest.raises(RuntimeError):
        for _ in pages:
            raise RuntimeError("consumer failed")
    pages.close()
    assert numbered.open_scrolls == 0


def test_scan_closes_cursor_when_backend_fails(numbered, monkeypatch):
    paginator = CursorPaginator(numbered)

    def broken_scroll(scroll_id, ttl):
        raise SearchRequestError("shard failure", status=500)

    monkeypatch.setattr(numbered, "scroll", broken_scroll)
    with pytest.raises(SearchRequestError):
        list(paginator.scan("metadata", None, page_size=10))
    assert numbered.open_scrolls == 0


def test_open_rejects_non_positive_page_size(numbered):
    with pytest.raises(ValueError):
        CursorPaginator(numbered).open("metadata", None, page_size=0)
