"""
Tests for snapshot loading and the SnapshotHandle lifecycle.
"""

import json

import pytest
import requests

from farm_copilot.core import snapshot as snapshot_mod
from farm_copilot.core.snapshot import SnapshotHandle, SnapshotLoaderError, find_collections_root

COLLECTIONS = {"farms": {"f1": {"name": "Home"}}, "fields": {"x": {"name": "0100-A", "farmId": "f1"}}}


class TestFindCollectionsRoot:
    @pytest.mark.parametrize(
        "doc",
        [
            {"data": {"__collections__": COLLECTIONS}},
            {"__collections__": COLLECTIONS},
            {"data": COLLECTIONS},
            COLLECTIONS,
        ],
    )
    def test_supported_layouts(self, doc):
        assert find_collections_root(doc) is COLLECTIONS or find_collections_root(doc) == COLLECTIONS

    def test_unsupported(self):
        assert find_collections_root({"farms": {}}) is None
        assert find_collections_root([]) is None


class TestFromFile:
    def test_reads_file(self, tmp_path):
        path = tmp_path / "snapshot-2026-10-01.json"
        path.write_text(json.dumps({"__collections__": COLLECTIONS}), encoding="utf-8")
        handle = SnapshotHandle.from_file(path)
        assert not handle.is_open
        handle.open()
        assert handle.is_open
        assert handle.snapshot_id == "snapshot-2026-10-01"
        assert list(handle.fields) == ["x"]
        assert handle.status()["ok"] is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(SnapshotLoaderError):
            SnapshotHandle.from_file(tmp_path / "nope.json").open()

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(SnapshotLoaderError):
            SnapshotHandle.from_file(path).open()

    def test_no_collections(self, tmp_path):
        path = tmp_path / "empty.json"
        path.write_text(json.dumps({"hello": 1}), encoding="utf-8")
        with pytest.raises(SnapshotLoaderError):
            SnapshotHandle.from_file(path).open()


class _FakeResponse:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def get(self, url, timeout):
        self.calls.append((url, timeout))
        if self.exc:
            raise self.exc
        return self.response


class TestFromUrl:
    def test_fetches_json(self):
        handle = SnapshotHandle.from_url("https://example.test/snap.json", timeout_seconds=5)
        handle._session = _FakeSession(_FakeResponse(200, {"data": {"__collections__": COLLECTIONS}}))
        handle.open()
        assert handle.farms == {"f1": {"name": "Home"}}
        assert handle._session.calls == [("https://example.test/snap.json", 5)]

    def test_http_error_status(self):
        handle = SnapshotHandle.from_url("https://example.test/snap.json")
        handle._session = _FakeSession(_FakeResponse(503, text="unavailable"))
        with pytest.raises(SnapshotLoaderError, match="HTTP 503"):
            handle.open()

    def test_network_error(self):
        handle = SnapshotHandle.from_url("https://example.test/snap.json")
        handle._session = _FakeSession(exc=requests.ConnectionError("down"))
        with pytest.raises(SnapshotLoaderError):
            handle.open()

    def test_non_json_body(self):
        handle = SnapshotHandle.from_url("https://example.test/snap.json")
        handle._session = _FakeSession(_FakeResponse(200, text="<html>"))
        with pytest.raises(SnapshotLoaderError, match="Non-JSON"):
            handle.open()


class TestLifecycle:
    def test_from_config_without_source(self, monkeypatch):
        monkeypatch.setattr(snapshot_mod, "SNAPSHOT_FILE", "")
        monkeypatch.setattr(snapshot_mod, "SNAPSHOT_URL", "")
        with pytest.raises(SnapshotLoaderError):
            SnapshotHandle.from_config()

    def test_from_config_prefers_file(self, monkeypatch):
        monkeypatch.setattr(snapshot_mod, "SNAPSHOT_FILE", "/tmp/snap.json")
        monkeypatch.setattr(snapshot_mod, "SNAPSHOT_URL", "https://example.test/snap.json")
        assert SnapshotHandle.from_config().source == "/tmp/snap.json"

    def test_refresh_rebuilds_frames(self):
        docs = [
            {"farms": {}, "fields": {"a": {"name": "0100-A"}}},
            {"farms": {}, "fields": {"a": {"name": "0100-A"}, "b": {"name": "0200-B"}}},
        ]
        handle = SnapshotHandle(source="memory", loader=lambda _h: docs.pop(0)).open()
        assert len(handle.fields_frame()) == 1
        handle.open()
        assert len(handle.fields_frame()) == 1
        handle.refresh()
        assert len(handle.fields_frame()) == 2

    def test_list_collections_are_keyed_by_id(self, snapshot):
        moves = snapshot.collection("binMovements")
        assert set(moves) == {"m1", "m2", "m3"}

    def test_fields_frame_columns(self, snapshot):
        frame = snapshot.fields_frame()
        row = frame.set_index("id").loc["fld-0900"]
        assert row["countyKey"] == "Macon, IL"
        assert bool(row["active"]) is False
        assert row["farmName"] == "Stone Seed"

    def test_record_frame(self, snapshot):
        frame = snapshot.record_frame("binMovements")
        assert len(frame) == 3
        assert snapshot.record_frame("equipment").empty
