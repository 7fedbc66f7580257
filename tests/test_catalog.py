import json
from unittest import mock

import pytest

from calliope.catalog import Catalog, ImageCollection, Site, collection_names
from calliope.config import CalliopeConfig, load_config
from calliope.errors import SearchUnavailableError
from calliope.main import main
from calliope.query.compiler import compile_query
from calliope.query.conditions import COLLECTION_FIELD, TermsCondition
from calliope.search.memory import MemorySearchBackend

from conftest import load_sample


# ── Catalog ───────────────────────────────────────────────────────────

def test_pull_sites_keeps_holes(backend, config):
    sites = {s.code: s for s in Catalog(backend, config).pull_sites()}
    assert set(sites) == {"NEON_D10_CPER", "LTAR_SAHEL"}
    ring = sites["LTAR_SAHEL"]
    assert len(ring.boundary.interiors) == 1
    assert ring.center == (10.0, 20.0)
    assert sites["NEON_D10_CPER"].name == "Central Plains"
    assert backend.open_scrolls == 0


def test_malformed_sites_are_skipped(backend, config):
    backend.index("neon_sites", "broken", {"site": {"siteCode": "X"}})
    backend.index("neon_sites", "no-code", {"boundary": {"type": "polygon", "coordinates": [[]]}})
    assert len(Catalog(backend, config).pull_sites()) == 2


def test_site_from_source_without_center():
    source = {"site": {"siteCode": "X"},
              "boundary": {"type": "polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 0]]]}}
    assert Site.from_source(source) is None


def test_pull_collections(backend, config):
    collections = Catalog(backend, config).pull_collections()
    by_id = {c.id: c for c in collections}
    assert by_id["c-1"] == ImageCollection("c-1", "Boulder flights", "University of Arizona",
                                           "drone@example.org", "Summer survey")
    assert collection_names(collections) == {"c-1": "Boulder flights", "c-2": "Sahel transect"}


def test_pages_are_fixed_at_configured_size(config):
    b = MemorySearchBackend()
    for i in range(23):
        b.index("collections", f"c{i}", {"name": f"n{i}"})
    spy = mock.Mock(wraps=b)
    assert len(Catalog(spy, config).pull_collections()) == 23
    body = spy.search.call_args.args[1]
    assert body["size"] == config.map.reference_page_size
    assert spy.scroll.call_count == 3
    spy.clear_scroll.assert_called_once()


def test_remove_collection_deletes_images_then_collection(backend, config, reporter):
    for i in range(1200):
        backend.index("metadata", f"bulk-{i}", {"collectionID": "c-1"})
    spy = mock.Mock(wraps=backend)
    assert Catalog(spy, config, reporter).remove_collection("c-1") is True

    assert backend.count("metadata") == 1          # only img-4 (c-2) is left
    assert backend.count("collections") == 1
    batch_sizes = [len(c.args[1]) for c in spy.bulk_delete.call_args_list]
    assert batch_sizes == [500, 500, 203]
    assert backend.open_scrolls == 0
    assert reporter.history == []


def test_remove_unknown_collection_is_reported(backend, config, reporter):
    assert Catalog(backend, config, reporter).remove_collection("c-404") is False
    assert "c-404" in reporter.history[0]


def test_remove_collection_transport_failure_is_reported(backend, config, reporter):
    spy = mock.Mock(wraps=backend)
    spy.bulk_delete.side_effect = SearchUnavailableError("timeout")
    assert Catalog(spy, config, reporter).remove_collection("c-1") is False
    assert "timeout" in reporter.history[0]
    assert backend.open_scrolls == 0
    assert backend.count("collections") == 2


def test_image_paths_matching(backend, config):
    catalog = Catalog(backend, config)
    assert catalog.image_paths_matching(compile_query([])) == [
        "/iplant/home/drone/flight1/DJI_0001.JPG",
        "/iplant/home/drone/flight1/DJI_0002.JPG",
        "/iplant/home/drone/flight1/DJI_0003.JPG",
        "/iplant/home/drone/flight2/DJI_0100.JPG",
    ]
    only_c2 = compile_query([TermsCondition(COLLECTION_FIELD, ["c-2"])])
    assert catalog.image_paths_matching(only_c2) == ["/iplant/home/drone/flight2/DJI_0100.JPG"]


# ── Configuration ─────────────────────────────────────────────────────

def test_defaults():
    cfg = CalliopeConfig()
    assert cfg.search.base_url == "http://localhost:9200"
    assert cfg.map.max_samples_per_bucket == 20
    assert cfg.map.pin_to_polygon_zoom == 10.0


def test_load_config_file(tmp_path):
    path = tmp_path / "calliope.json"
    path.write_text(json.dumps({
        "search": {"host": "es.example.org", "scheme": "https", "sites_index": "sites"},
        "map": {"max_samples_per_bucket": 50},
    }))
    cfg = load_config(path)
    assert cfg.search.base_url == "https://es.example.org:9200"
    assert cfg.search.sites_index == "sites"
    assert cfg.map.max_samples_per_bucket == 50


def test_load_config_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "env.json"
    path.write_text(json.dumps({"search": {"port": 9201}}))
    monkeypatch.setenv("CALLIOPE_CONFIG", str(path))
    assert load_config().search.port == 9201


@pytest.mark.parametrize("raw", [{"search": {"hots": "x"}}, {"display": {}}])
def test_unknown_keys_are_rejected(tmp_path, raw):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps(raw))
    with pytest.raises(KeyError):
        load_config(path)


# ── CLI ───────────────────────────────────────────────────────────────

@pytest.fixture
def data_file(tmp_path):
    b = MemorySearchBackend()
    load_sample(b)
    dump = {
        index: {doc_id: b.mget(index, [doc_id])[0]["_source"] for doc_id in ids}
        for index, ids in {
            "metadata": ["img-1", "img-2", "img-3", "img-4"],
            "collections": ["c-1", "c-2"],
            "neon_sites": ["s-1", "s-2"],
        }.items()
    }
    path = tmp_path / "docs.json"
    path.write_text(json.dumps(dump))
    return path


def cli(tmp_path, data_file, *args):
    return main(["--data", str(data_file), "--log-dir", str(tmp_path / "logs"), *args])


def test_cli_aggregate(tmp_path, data_file, capsys):
    code = cli(tmp_path, data_file, "aggregate",
               "--north", "41", "--west", "-106", "--south", "39", "--east", "-104", "--zoom", "3")
    assert code == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0] == "1 cells at depth 1"
    assert out[1].split()[2] == "3"


def test_cli_detect_sites(tmp_path, data_file, capsys):
    assert cli(tmp_path, data_file, "detect-sites", "9.5,19.5", "10,20") == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0].endswith("LTAR_SAHEL")
    assert out[1].endswith("-")


def test_cli_paths_with_filter(tmp_path, data_file, capsys):
    assert cli(tmp_path, data_file, "paths", "--terms", "collectionID=c-2") == 0
    assert capsys.readouterr().out.split() == ["/iplant/home/drone/flight2/DJI_0100.JPG"]


def test_cli_remove_unknown_collection_fails(tmp_path, data_file):
    assert cli(tmp_path, data_file, "remove-collection", "nope") == 1
