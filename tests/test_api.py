from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from loguru import logger

from pl_engine import api

from .conftest import fill_publishable


@pytest.fixture
def client(taxonomy, store):
    api.configure(taxonomy, store)
    yield TestClient(api.app)
    api.configure(None, None)


def _ensure(client, moment="bath-time"):
    resp = client.post("/sets/ensure", json={"age_range_id": "6-12m", "moment_id": moment})
    assert resp.status_code == 200
    return resp.json()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy"}


def test_resolve(client):
    body = client.get("/resolve", params={"month": 6}).json()
    assert body["bucket_id"] == "6-12m"
    assert body["reason"] == "overlap"
    assert body["candidates"] == ["0-6m", "6-12m"]
    assert "6-12m" in body["badge"]


def test_resolve_rejects_non_integer(client):
    assert client.get("/resolve", params={"month": "six"}).status_code == 422


def test_picks(client):
    body = client.get("/picks", params={"age_range_id": "6-12m", "wrapper_slug": "grasping"}).json()
    assert [p["product"]["id"] for p in body["picks"]] == ["P1", "P3", "P2"]


def test_picks_negative_limit(client):
    resp = client.get("/picks", params={"age_range_id": "6-12m", "wrapper_slug": "grasping", "limit": -1})
    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "INVALID_INPUT"


def test_category_picks(client):
    body = client.get("/picks/category", params={"age_range_id": "6-12m", "category_id": "C1"}).json()
    assert [p["product"]["id"] for p in body["picks"]] == ["P1", "P2"]


def test_ensure_set_twice(client):
    first = _ensure(client)
    second = _ensure(client)
    assert first["created"] is True
    assert second["created"] is False
    assert first["set"]["id"] == second["set"]["id"]


def test_publish_rejected_returns_violations(client):
    set_id = _ensure(client)["set"]["id"]
    resp = client.post(f"/sets/{set_id}/publish")
    assert resp.status_code == 422
    detail = resp.json()["detail"]
    assert detail["code"] == "PUBLISH_REJECTED"
    assert detail["violations"][0]["rule"] == "evidence"


def test_publish_and_unpublish(client, store):
    set_id = _ensure(client)["set"]["id"]
    fill_publishable(store, set_id)
    version = store.get_set(set_id).version
    resp = client.post(f"/sets/{set_id}/publish", json={"expected_version": version})
    assert resp.status_code == 200
    assert resp.json()["set"]["status"] == "published"
    assert resp.json()["set"]["published_at"] is not None

    resp = client.post(f"/sets/{set_id}/unpublish")
    assert resp.status_code == 200
    assert resp.json()["set"]["status"] == "draft"


def test_publish_version_conflict(client, store):
    set_id = _ensure(client)["set"]["id"]
    fill_publishable(store, set_id)
    resp = client.post(f"/sets/{set_id}/publish", json={"expected_version": 0})
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "VERSION_CONFLICT"


def test_publish_unknown_set(client):
    assert client.post("/sets/missing/publish").status_code == 404


def test_store_failure_is_503(client, tmp_path):
    from pl_engine.curation_store import CurationStore

    api.configure(api._taxonomy, CurationStore(tmp_path / "empty.sqlite"))
    resp = client.post("/sets/ensure", json={"age_range_id": "6-12m", "moment_id": "x"})
    assert resp.status_code == 503


def test_card_update_guard(client, store):
    set_id = _ensure(client)["set"]["id"]
    card_id = store.load_graph(set_id).cards[0].id
    resp = client.patch(f"/cards/{card_id}", json={"product_id": "P1", "category_id": "C2"})
    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "CATEGORY_PRODUCT_MISMATCH"
    resp = client.patch(f"/cards/{card_id}", json={"product_id": "P1", "category_id": "C1"})
    assert resp.status_code == 200
    assert resp.json()["card"]["category_id"] == "C1"


def test_card_update_unknown_card(client):
    assert client.patch("/cards/missing", json={"rationale": "x"}).status_code == 404


def test_place_product_and_evidence(client, store):
    set_id = _ensure(client)["set"]["id"]
    card_id = store.load_graph(set_id).cards[0].id
    resp = client.post(f"/cards/{card_id}/place-product", json={"product_id": "P1", "category_slug": "rattles"})
    assert resp.status_code == 200
    assert resp.json()["card"]["rationale"] == "Easy to grip"

    resp = client.post(f"/cards/{card_id}/evidence", json={"source_type": "study", "confidence": 5})
    assert resp.status_code == 200
    assert resp.json()["evidence"]["card_id"] == card_id
    bad = client.post(f"/cards/{card_id}/evidence", json={"source_type": "study", "confidence": 0})
    assert bad.status_code == 422


def test_use_pool_item(client, store):
    set_id = _ensure(client)["set"]["id"]
    card_id = store.load_graph(set_id).cards[2].id
    item = store.add_pool_item("6-12m", "bath-time", "C3")
    resp = client.post(f"/pool-items/{item.id}/use", json={"card_id": card_id})
    assert resp.status_code == 200
    assert resp.json()["card"]["category_id"] == "C3"
    assert client.post("/pool-items/missing/use", json={"card_id": card_id}).status_code == 404


def test_autopilot(client):
    set_id = _ensure(client)["set"]["id"]
    body = client.get(f"/sets/{set_id}/autopilot").json()
    assert [s["product_id"] for s in body["slots"]] == ["P1", "P3", "P4"]
    assert [a["product_id"] for a in body["alternatives"]] == ["P2"]
    assert body["slots"][0]["is_ready"] is True


def test_set_lookup_populates_draft_in_background(client, store):
    first = client.get("/sets", params={"age_range_id": "6-12m", "moment_id": "tummy-time"})
    assert first.status_code == 200
    assert first.json() == {"set": None, "pending": True}
    # background tasks run before TestClient returns
    created = store.find_set("6-12m", "tummy-time")
    assert created is not None
    assert len(store.load_graph(created.id).cards) == 3

    second = client.get("/sets", params={"age_range_id": "6-12m", "moment_id": "tummy-time"}).json()
    assert second["pending"] is False
    assert second["set"]["id"] == created.id


def test_published_sets_endpoint(client, store):
    draft_id = _ensure(client)["set"]["id"]
    live_id = _ensure(client, moment="nap")["set"]["id"]
    fill_publishable(store, live_id)
    store.publish_set(live_id)

    body = client.get("/sets/published", params={"age_range_id": "6-12m"}).json()
    ids = [g["curation_set"]["id"] for g in body["sets"]]
    assert ids == [live_id]
    assert draft_id not in ids
    assert all(len(c["evidence"]) == 1 for c in body["sets"][0]["cards"])


def test_update_and_delete_evidence(client, store):
    set_id = _ensure(client)["set"]["id"]
    card_id = store.load_graph(set_id).cards[0].id
    ev_id = client.post(f"/cards/{card_id}/evidence", json={"source_type": "study", "confidence": 2}).json()["evidence"]["id"]

    resp = client.patch(f"/evidence/{ev_id}", json={"confidence": 4, "quote": "Grip develops early"})
    assert resp.status_code == 200
    assert resp.json()["evidence"]["confidence"] == 4
    assert client.patch(f"/evidence/{ev_id}", json={"confidence": 7}).status_code == 422
    assert client.patch("/evidence/missing", json={"confidence": 3}).status_code == 404

    assert client.delete(f"/evidence/{ev_id}").status_code == 204
    assert store.load_graph(set_id).cards[0].evidence == []
    assert client.delete(f"/evidence/{ev_id}").status_code == 404


def test_remove_pool_item(client, store):
    item = store.add_pool_item("6-12m", "bath-time", "C3")
    assert client.delete(f"/pool-items/{item.id}").status_code == 204
    assert store.pool_category_ids("6-12m", "bath-time") == []
    assert client.delete(f"/pool-items/{item.id}").status_code == 404


def test_file_sink_is_added_once(taxonomy, store, tmp_path, monkeypatch):
    monkeypatch.setattr(api, "LOG_TO_FILE", True)
    monkeypatch.setattr(api, "LOG_DIR", tmp_path / "logs")
    monkeypatch.setattr(api, "_log_sink_id", None)
    api.configure(taxonomy, store)
    try:
        api.startup_event()
        sink_id = api._log_sink_id
        api.startup_event()
        assert api._log_sink_id == sink_id
        logger.info("sink-marker-line")
    finally:
        logger.remove(api._log_sink_id)
        api.configure(None, None)
    text = (tmp_path / "logs" / "pl_engine.log").read_text()
    assert text.count("sink-marker-line") == 1
