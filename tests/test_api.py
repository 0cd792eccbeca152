import importlib

import pytest
from fastapi.testclient import TestClient

from charge_watcher import storage

LAPTOP = [45, 43, 40, 38]
LAPTOP_AGAIN = [46, 44, 41, 39]
PHONE = [15, 12, 10, 8]
EARBUDS = [5, 5.5, 5.2, 5]


@pytest.fixture
def api(monkeypatch, conn, db_url, make_session):
    storage.save_sessions(
        conn,
        [
            make_session("s1", LAPTOP, minutes=120),
            make_session("s2", LAPTOP_AGAIN, day=1, minutes=100),
            make_session("s3", PHONE, day=2, minutes=60),
            make_session("s4", EARBUDS, day=3, minutes=45),
        ],
    )
    monkeypatch.setenv("CHARGE_DB_URL", db_url)
    monkeypatch.setenv("CHARGE_SNAPSHOT_RETRY_INTERVAL", "3600")

    module = importlib.import_module("charge_watcher.api")
    return importlib.reload(module)


def _names(conn):
    conn.commit()
    return {s.id: s.device_name for s in storage.load_sessions(conn)}


def _pattern_of(client, session_id):
    payload = client.get("/api/patterns").json()
    for pattern in payload["patterns"]:
        if session_id in pattern["process_ids"]:
            return pattern
    return None


def test_recluster_and_list(api):
    with TestClient(api.app) as client:
        assert client.get("/api/patterns").json()["patterns"] == []

        response = client.post("/api/patterns/recluster")
        assert response.status_code == 200
        assert [p["count"] for p in response.json()["patterns"]] == [2, 1, 1]

        payload = client.get("/api/patterns").json()
        assert payload["summary"]["patterns"] == 3
        assert payload["summary"]["sessions"] == 4

        health = client.get("/healthz").json()
        assert health["patterns"] == 3
        assert not health["snapshot_dirty"]

    # The snapshot outlives the process
    with TestClient(api.app) as client:
        assert len(client.get("/api/patterns").json()["patterns"]) == 3


def test_label_conflict_suggests_merge(api):
    with TestClient(api.app) as client:
        client.post("/api/patterns/recluster")
        laptop = _pattern_of(client, "s1")
        phone = _pattern_of(client, "s3")

        response = client.put(f"/api/patterns/{phone['id']}/label", json={"name": laptop["device_name"]})
        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["should_merge"] is True
        assert detail["target_pattern_id"] == laptop["id"]
        assert _pattern_of(client, "s3")["device_name"] == phone["device_name"]

        response = client.put(f"/api/patterns/{phone['id']}/label", json={"name": "Pixel"})
        assert response.status_code == 200
        assert response.json()["pattern"]["device_name"] == "Pixel"


def test_label_validation_and_unknown_pattern(api):
    with TestClient(api.app) as client:
        client.post("/api/patterns/recluster")
        laptop = _pattern_of(client, "s1")
        assert client.put(f"/api/patterns/{laptop['id']}/label", json={"name": "  "}).status_code == 422
        assert client.put("/api/patterns/pattern_missing/label", json={"name": "X"}).status_code == 404
        assert client.delete("/api/patterns/pattern_missing").status_code == 404


def test_bulk_label_writes_session_names(api, conn):
    with TestClient(api.app) as client:
        client.post("/api/patterns/recluster")
        laptop = _pattern_of(client, "s1")
        response = client.put(
            f"/api/patterns/{laptop['id']}/label",
            json={"name": "MacBook", "bulk": True},
        )
        assert response.status_code == 200
        assert sorted(response.json()["pattern"]["process_ids"]) == ["s1", "s2"]

    names = _names(conn)
    assert names["s1"] == names["s2"] == "MacBook"
    assert names["s3"] is None


def test_merge_endpoint(api, conn):
    with TestClient(api.app) as client:
        client.post("/api/patterns/recluster")
        laptop = _pattern_of(client, "s1")
        phone = _pattern_of(client, "s3")

        response = client.post(f"/api/patterns/{phone['id']}/merge", json={"target_id": laptop["id"]})
        assert response.status_code == 200
        merged = response.json()["pattern"]
        assert merged["count"] == 3
        assert merged["statistics"]["median"] is None
        assert response.json()["removed_pattern_id"] == phone["id"]
        assert len(client.get("/api/patterns").json()["patterns"]) == 2

        same = client.post(f"/api/patterns/{laptop['id']}/merge", json={"target_id": laptop["id"]})
        assert same.status_code == 422

    assert _names(conn)["s3"] == laptop["device_name"]


def test_rename_session_splits_it_out(api, conn):
    with TestClient(api.app) as client:
        client.post("/api/patterns/recluster")
        response = client.put("/api/sessions/s2/name", json={"name": "Work laptop"})
        assert response.status_code == 200
        assert response.json()["pattern"]["process_ids"] == ["s2"]
        assert _pattern_of(client, "s1")["process_ids"] == ["s1"]
        assert client.put("/api/sessions/missing/name", json={"name": "X"}).status_code == 404

    assert _names(conn)["s2"] == "Work laptop"


def test_complete_session_auto_assigns(api, conn, make_session):
    with TestClient(api.app) as client:
        client.post("/api/patterns/recluster")
        laptop = _pattern_of(client, "s1")
        storage.save_sessions(
            conn,
            [
                make_session("s9", LAPTOP, day=5),
                make_session("live", LAPTOP, day=6, active=True),
            ],
        )

        response = client.post("/api/sessions/s9/complete")
        assert response.status_code == 200
        payload = response.json()
        assert payload["auto_assigned"]["pattern_id"] == laptop["id"]
        assert payload["pattern"]["count"] == 3

        assert client.post("/api/sessions/live/complete").status_code == 422

    assert _names(conn)["s9"] == laptop["device_name"]


def test_named_while_charging_then_completed(api, conn, make_session):
    with TestClient(api.app) as client:
        client.post("/api/patterns/recluster")
        before = client.get("/api/patterns").json()["patterns"]
        storage.save_sessions(conn, [make_session("live", LAPTOP, day=6, active=True)])

        response = client.put("/api/sessions/live/name", json={"name": "MacBook"})
        assert response.status_code == 200
        assert response.json()["pattern"] is None
        assert client.get("/api/patterns").json()["patterns"] == before
        assert _names(conn)["live"] == "MacBook"

        storage.save_sessions(conn, [make_session("live", LAPTOP, day=6, name="MacBook")])
        payload = client.post("/api/sessions/live/complete").json()
        assert payload["auto_assigned"] is None
        assert payload["pattern"]["device_name"] == "MacBook"
        assert payload["pattern"]["process_ids"] == ["live"]


def test_live_session_queries(api, conn, make_session):
    with TestClient(api.app) as client:
        client.post("/api/patterns/recluster")
        laptop = _pattern_of(client, "s1")
        storage.save_sessions(conn, [make_session("live", LAPTOP, day=6, active=True)])

        guess = client.get("/api/sessions/live/guess").json()["guess"]
        assert guess["pattern_id"] == laptop["id"]

        guesses = client.get("/api/sessions/live/guesses", params={"exclude": [laptop["id"]]}).json()
        assert all(g["pattern_id"] != laptop["id"] for g in guesses["guesses"])

        completion = client.get("/api/sessions/live/completion").json()
        assert completion["finishing"] is False
        assert completion["rules"]["min_total_readings"] == 20

        estimate = client.get("/api/sessions/live/estimate").json()["estimate"]
        assert estimate["pattern_id"] == laptop["id"]
        assert not estimate["finished"]

        assert client.get("/api/sessions/missing/guess").status_code == 404


def test_failed_snapshot_keeps_memory_state(api, monkeypatch):
    def broken(settings, store):
        raise RuntimeError("disk full")

    with TestClient(api.app) as client:
        monkeypatch.setattr(api, "_write_snapshot", broken)
        response = client.post("/api/patterns/recluster")
        assert response.status_code == 200
        health = client.get("/healthz").json()
        assert health["snapshot_dirty"] is True
        assert health["patterns"] == 3


def test_diagnostics_endpoint(api):
    with TestClient(api.app) as client:
        client.post("/api/patterns/recluster")
        rows = client.get("/api/diagnostics").json()["sessions"]
        assert {row["session_id"] for row in rows} == {"s1", "s2", "s3", "s4"}
        assert all(row["pattern_id"] for row in rows)
