import cv2
import pytest
from fastapi.testclient import TestClient

import main
from conftest import draw_frame


def _png(img):
    ok, buf = cv2.imencode(".png", cv2.cvtColor(img, cv2.COLOR_RGB2BGR))
    assert ok
    return buf.tobytes()


CARD_PNG = _png(draw_frame(shapes_to_draw=[("rect", 213, 172, 427, 307)]))
BLANK_PNG = _png(draw_frame())


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "DATA_DIR", str(tmp_path))
    main._history.clear()
    with TestClient(main.app) as c:
        yield c


def _upload(data=CARD_PNG):
    return {"image": ("frame.png", data, "image/png")}


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["calibrated"] is False


def test_references_are_listed(client):
    refs = client.get("/api/references").json()
    assert "credit-card" in {r["name"] for r in refs}


def test_uncalibrated_measure_returns_pixels(client):
    r = client.post("/api/measure", files=_upload(), data={"include_contours": "true"})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    det = body["detections"][0]
    assert det["measurement"]["unit"] == "px"
    assert det["measurement"]["depth"] is None
    assert len(det["detection"]["contour"]) >= 4
    assert len(body["frame_hash"]) == 64

    history = client.get("/api/history").json()
    assert len(history["persisted"]) == 1
    assert history["in_memory"] == 1


def test_blank_frame_is_not_an_error(client):
    r = client.post("/api/measure", files=_upload(BLANK_PNG))
    assert r.status_code == 200
    assert r.json()["status"] == "no_object_found"


@pytest.mark.parametrize("data", [
    {"depth": "sonar"},
    {"profile": "loudest"},
    {"quality": "ultra"},
    {"unit": "furlong"},
    {"x": "5000", "y": "10"},
    {"x": "10"},
])
def test_bad_measure_inputs_are_400(client, data):
    assert client.post("/api/measure", files=_upload(), data=data).status_code == 400


def test_undecodable_image_is_400(client):
    assert client.post("/api/measure", files=_upload(b"definitely not a png")).status_code == 400


def test_reference_calibration_then_measure(client):
    r = client.post("/api/calibrate/reference", files=_upload(), data={"reference": "credit-card"})
    assert r.status_code == 200
    body = r.json()
    assert body["valid"] is True
    assert body["calibration"]["pixels_per_unit"] == pytest.approx(2.5, rel=0.05)

    m = client.post("/api/measure", files=_upload()).json()["detections"][0]["measurement"]
    assert m["calibration_method"] == "reference"
    assert m["calibration_ref"] == "credit-card"
    assert m["unit"] == "cm"
    assert m["width"] == pytest.approx(8.56, abs=0.2)
    assert m["depth"] is not None


def test_reference_mismatch_is_422(client):
    square = _png(draw_frame(shapes_to_draw=[("rect", 260, 180, 380, 300)]))
    r = client.post("/api/calibrate/reference", files=_upload(square), data={"reference": "credit-card"})
    assert r.status_code == 422
    assert client.get("/api/calibration").json()["calibration"] is None


def test_calibration_without_object_is_422(client):
    r = client.post("/api/calibrate/manual", files=_upload(BLANK_PNG), data={"measurement": "50"})
    assert r.status_code == 422


def test_manual_and_auto_calibration(client):
    r = client.post("/api/calibrate/manual", files=_upload(), data={"measurement": "8.56", "unit": "cm"})
    assert r.status_code == 200
    assert r.json()["calibration"]["method"] == "manual"

    r = client.post("/api/calibrate/auto", files=_upload())
    assert r.status_code == 200
    assert r.json()["calibration"]["confidence"] <= 0.8


def test_export_clear_import(client):
    assert client.get("/api/calibration/export").status_code == 404

    client.post("/api/calibrate/reference", files=_upload(), data={"reference": "credit-card"})
    blob = client.get("/api/calibration/export").json()["blob"]

    assert client.delete("/api/calibration").json() == {"cleared": True}
    assert client.get("/api/calibration").json()["valid"] is False
    assert client.delete("/api/calibration").json() == {"cleared": False}

    r = client.post("/api/calibration/import", json={"blob": blob})
    assert r.status_code == 200
    assert client.get("/api/calibration").json()["valid"] is True

    assert client.post("/api/calibration/import", json={"blob": "garbage!"}).status_code == 422


def test_calibration_uses_configured_detection_defaults(client, monkeypatch):
    monkeypatch.setattr(main, "DEFAULT_QUALITY", "ultra")
    r = client.post("/api/calibrate/reference", files=_upload(), data={"reference": "credit-card"})
    assert r.status_code == 400
    assert client.post("/api/measure", files=_upload()).status_code == 400

    monkeypatch.setattr(main, "DEFAULT_QUALITY", "balanced")
    r = client.post("/api/calibrate/reference", files=_upload(), data={"reference": "credit-card"})
    assert r.status_code == 200


def test_reference_suggestions_for_upload(client):
    r = client.post("/api/references/suggest", files=_upload(), data={"limit": "2"})
    assert r.status_code == 200
    body = r.json()
    assert [s["name"] for s in body["suggestions"]][0] == "credit-card"
    assert len(body["suggestions"]) == 2
    assert body["scale_used"] is False

    client.post("/api/calibrate/reference", files=_upload(), data={"reference": "credit-card"})
    body = client.post("/api/references/suggest", files=_upload()).json()
    assert body["scale_used"] is True
    assert body["suggestions"][0]["name"] == "credit-card"

    assert client.post("/api/references/suggest", files=_upload(BLANK_PNG)).status_code == 422
