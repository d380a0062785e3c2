"""
Tests for the HTTP API (omnispark/main.py, omnispark/pipeline/routes.py)
"""

import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from omnispark.main import create_app
from omnispark.pipeline.errors import PermissionDeniedError
from omnispark.pipeline.routes import AppState
from omnispark.veo import OperationStatus


@pytest.fixture
def app_state(config, backend, media_cache, fake_gemini, fake_veo) -> AppState:
    return AppState(
        config,
        backend,
        media_cache,
        gemini_factory=lambda cfg: fake_gemini,
        veo_factory=lambda cfg: fake_veo,
    )


@pytest.fixture
def client(monkeypatch, app_state):
    monkeypatch.delenv("OMNISPARK_SHARED_SECRET", raising=False)
    monkeypatch.setenv("ENVIRONMENT", "development")
    with TestClient(create_app(state=app_state)) as test_client:
        yield test_client


@pytest.fixture
def brief_body(png_payload) -> dict:
    return {
        "name": "便携榨汁杯",
        "description": "无线充电，30秒出汁。",
        "creative_direction": "猎奇吸睛",
        "images": [png_payload.to_data_url()],
    }


def _session_with_visual(client, brief_body) -> tuple[str, list[dict]]:
    sid = client.post("/sessions").json()["id"]
    assert client.post(f"/sessions/{sid}/brief", json=brief_body).status_code == 200
    concepts = client.post(f"/sessions/{sid}/concepts").json()["concepts"]
    client.post(f"/sessions/{sid}/concepts/{concepts[0]['id']}/select")
    assert client.post(f"/sessions/{sid}/visual").status_code == 200
    return sid, concepts


class TestHealthAndConfig:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["video_key_set"] is True

    def test_metrics_snapshot(self, client):
        body = client.get("/metrics").json()
        assert "counters" in body and "uptime_seconds" in body

    def test_config_update_creates_new_config(self, client, app_state, config):
        """PUT /config swaps the config object; the old one is untouched."""
        resp = client.put("/config", json={"image_model": "gemini-3-pro-image-preview"})
        assert resp.status_code == 200
        assert resp.json()["image_model"] == "gemini-3-pro-image-preview"
        assert app_state.config is not config
        assert config.image_model == "gemini-2.5-flash-image"

    def test_empty_config_update_rejected(self, client):
        assert client.put("/config", json={}).status_code == 400


class TestAuth:
    def test_secret_required_when_configured(self, monkeypatch, app_state):
        monkeypatch.setenv("OMNISPARK_SHARED_SECRET", "s3cret")
        with TestClient(create_app(state=app_state)) as secured:
            assert secured.get("/health").status_code == 200
            assert secured.post("/sessions").status_code == 401
            ok = secured.post("/sessions", headers={"X-Omnispark-Secret": "s3cret"})
            assert ok.status_code == 200


class TestSessionRoutes:
    """Tests for the session flow over HTTP."""

    def test_full_flow(self, client, brief_body):
        sid, concepts = _session_with_visual(client, brief_body)
        assert len(concepts) == 3

        state = client.get(f"/sessions/{sid}").json()
        assert state["step"] == 3
        assert state["selected_concept"]["id"] == concepts[0]["id"]

        edited = client.post(f"/sessions/{sid}/edit", json={"instruction": "warmer light"}).json()
        assert edited["prompt"] == "Edit: warmer light"
        assert edited["data_url"].startswith("data:image/png;base64,")

        board = client.post(f"/sessions/{sid}/storyboard").json()
        assert len(board["shots"]) == 4
        assert board["failed_labels"] == []

        regen = client.post(f"/sessions/{sid}/storyboard/1", json={}).json()
        assert regen["label"] == board["shots"][1]["label"]

        history = client.get(f"/sessions/{sid}/history").json()
        assert history["sizes"]["images"] == 7
        assert all(i["concept_id"] == concepts[0]["id"] for i in history["images"])

    def test_invalid_brief_is_400(self, client, brief_body):
        sid = client.post("/sessions").json()["id"]
        brief_body["description"] = ""
        assert client.post(f"/sessions/{sid}/brief", json=brief_body).status_code == 400

    def test_brief_from_product_library(self, client, brief_body):
        product = client.post("/products", json=brief_body).json()
        sid = client.post("/sessions").json()["id"]
        resp = client.post(f"/sessions/{sid}/brief", json={"product_id": product["id"]})
        assert resp.status_code == 200
        assert resp.json()["product_name"] == brief_body["name"]

    def test_unknown_session_is_404(self, client):
        assert client.get("/sessions/nope").status_code == 404

    def test_selection_error_is_409(self, client):
        sid = client.post("/sessions").json()["id"]
        resp = client.post(f"/sessions/{sid}/edit", json={"instruction": "x"})
        assert resp.status_code == 409
        assert resp.json()["next_action"] == "adjust_selection"

    def test_permission_denied_is_403(self, client, brief_body, fake_gemini):
        sid = client.post("/sessions").json()["id"]
        client.post(f"/sessions/{sid}/brief", json=brief_body)
        fake_gemini.generate_json = AsyncMock(side_effect=PermissionDeniedError("denied", status_code=403))

        resp = client.post(f"/sessions/{sid}/concepts")

        assert resp.status_code == 403
        assert resp.json()["next_action"] == "reselect_credentials"

    def test_mode_switch_clears_selection(self, client, brief_body):
        sid, _ = _session_with_visual(client, brief_body)
        state = client.post(f"/sessions/{sid}/mode", json={"mode": "pdp"}).json()
        assert state["selected_concept"] is None
        assert state["active_image_id"] is None
        assert state["aspect_ratio"] == "9:16"
        assert state["visible_steps"] == [1, 2, 3]

    def test_revise_concept(self, client, brief_body):
        sid, concepts = _session_with_visual(client, brief_body)
        resp = client.post(f"/sessions/{sid}/concepts/{concepts[0]['id']}/revise", json={"title": "改"})
        assert resp.json()["title"] == "改"
        assert resp.json()["id"] != concepts[0]["id"]

    def test_video_job_runs_in_background(self, client, brief_body):
        sid, _ = _session_with_visual(client, brief_body)

        resp = client.post(f"/sessions/{sid}/video", json={})
        assert resp.status_code == 202
        assert len(resp.json()["reference_ids"]) == 1

        job = None
        for _ in range(200):
            job = client.get(f"/sessions/{sid}/video").json()["job"]
            if job and job["state"] in ("READY", "FAILED"):
                break
            time.sleep(0.01)

        assert job["state"] == "READY"
        assert job["local_url"].startswith("/media/videos/")
        assert client.get(job["local_url"]).status_code == 200

    def test_second_video_request_while_running_is_409(self, client, brief_body, fake_veo):
        fake_veo.get_operation = AsyncMock(return_value=OperationStatus(name="op", done=False))
        sid, _ = _session_with_visual(client, brief_body)

        assert client.post(f"/sessions/{sid}/video", json={}).status_code == 202
        assert client.post(f"/sessions/{sid}/video", json={}).status_code == 409
        assert client.delete(f"/sessions/{sid}/video").json() == {"cancelled": True}

        body = None
        for _ in range(200):
            body = client.get(f"/sessions/{sid}/video").json()
            if body["job"] and body["job"]["state"] == "FAILED":
                break
            time.sleep(0.01)

        assert body["job"]["state"] == "FAILED"
        assert body["status"]["kind"] == "cancelled"
        fake_veo.submit.assert_awaited_once()

    def test_video_with_too_many_references_is_409(self, client, brief_body):
        sid, _ = _session_with_visual(client, brief_body)
        client.post(f"/sessions/{sid}/storyboard")
        ids = client.get(f"/sessions/{sid}/video").json()["candidates"]
        assert client.post(f"/sessions/{sid}/video", json={"reference_ids": ids[:4]}).status_code == 409


class TestLibraryRoutes:
    def test_promote_pin_export_delete(self, client, brief_body):
        sid, concepts = _session_with_visual(client, brief_body)

        asset = client.post("/library", json={"session_id": sid, "artifact_id": concepts[0]["id"]}).json()
        assert asset["type"] == "concept"
        raw = client.post("/library", json={"type": "video", "content": "/media/videos/x.mp4"}).json()

        pinned = client.post(f"/library/{asset['id']}/pin").json()
        assert pinned["pinned"] is True
        assert [a["id"] for a in client.get("/library").json()] == [asset["id"], raw["id"]]
        assert [a["id"] for a in client.get("/library", params={"mode": "video"}).json()] == [asset["id"]]

        md = client.get("/library/export").text
        assert concepts[0]["title"] in md

        assert client.delete(f"/library/{raw['id']}").status_code == 200
        assert client.delete(f"/library/{raw['id']}").status_code == 404

    def test_bad_promote_request(self, client):
        assert client.post("/library", json={}).status_code == 400
        assert client.get("/library", params={"mode": "gif"}).status_code == 400


class TestProductRoutes:
    def test_save_dedupes(self, client, brief_body):
        first = client.post("/products", json=brief_body).json()
        again = client.post("/products", json=brief_body).json()
        assert first["id"] == again["id"]
        assert len(client.get("/products").json()) == 1

    def test_pin_and_delete(self, client, brief_body):
        product = client.post("/products", json=brief_body).json()
        assert client.post(f"/products/{product['id']}/pin").json()["pinned"] is True
        assert client.delete(f"/products/{product['id']}").status_code == 200
        assert client.post(f"/products/{product['id']}/pin").status_code == 404

    def test_describe(self, client):
        resp = client.post("/products/describe", json={"name": "榨汁杯"})
        assert resp.json() == {"description": "轻巧便携，随时鲜榨。"}
        assert client.post("/products/describe", json={"name": ""}).status_code == 400
