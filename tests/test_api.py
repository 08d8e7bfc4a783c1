"""HTTP tests for the flyer API with fake services."""

from __future__ import annotations

import base64
import json
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app.api import routes
from app.main import app
from app.models import flyer
from app.models.flyer import ImageRef
from app.services.errors import UpstreamError
from app.services.flyer_orchestrator import FlyerOrchestrator
from tests.conftest import (
    FakeBackgroundRemover,
    FakeImageGenerator,
    FakeLayoutProducer,
    make_png,
)

LAYOUT = (
    '<div><img x-prompt="lantern" transparent="true" width="200" height="200">'
    '<img x-prompt="night sky" transparent="false"></div>'
)


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def fakes(monkeypatch, settings):
    layout = FakeLayoutProducer(LAYOUT)
    generator = FakeImageGenerator()
    remover = FakeBackgroundRemover()

    monkeypatch.setattr(routes, "gemini_service", SimpleNamespace(generate_layout=layout))
    monkeypatch.setattr(routes, "image_generator", SimpleNamespace(generate_image=generator))
    monkeypatch.setattr(routes, "image_processor", SimpleNamespace(remove_background=remover))
    monkeypatch.setattr(
        routes,
        "flyer_orchestrator",
        FlyerOrchestrator(layout, generator, remover, settings=settings),
    )
    return SimpleNamespace(layout=layout, generator=generator, remover=remover)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_index_page(client):
    response = client.get("/")

    assert response.status_code == 200
    assert "generate-btn" in response.text


def test_generate_layout(client, fakes):
    response = client.post("/api/generate-layout", json={"requirements": "Lantern festival"})

    assert response.status_code == 200
    assert response.json() == {"html": LAYOUT}
    assert fakes.layout.calls == ["Lantern festival"]


def test_generate_layout_requires_brief(client, fakes):
    response = client.post("/api/generate-layout", json={"requirements": "  "})

    assert response.status_code == 400
    assert fakes.layout.calls == []


def test_generate_layout_upstream_failure(client, fakes):
    fakes.layout.error = UpstreamError("GEMINI_API_KEY is not set.")

    response = client.post("/api/generate-layout", json={"requirements": "Lantern festival"})

    assert response.status_code == 502
    assert response.json() == {"detail": "GEMINI_API_KEY is not set."}


def test_generate_image(client, fakes):
    response = client.post(
        "/api/generate-image",
        json={"prompt": "lantern", "width": 200, "height": 120, "isTransparent": False},
    )

    assert response.status_code == 200
    assert response.json()["url"] == fakes.generator.images[0].to_data_uri()
    assert fakes.generator.calls == [("lantern", 200, 120)]
    assert fakes.remover.calls == []


def test_generate_transparent_image_falls_back_when_segmentation_fails(client, fakes):
    fakes.remover.fail = True

    response = client.post(
        "/api/generate-image",
        json={"prompt": "lantern", "width": 200, "height": 200, "isTransparent": True},
    )

    assert response.status_code == 200
    assert response.json()["url"] == fakes.generator.images[0].to_data_uri()
    assert len(fakes.remover.calls) == 1


def test_generate_image_upstream_failure(client, fakes):
    fakes.generator.fail_on = {1}

    response = client.post("/api/generate-image", json={"prompt": "lantern"})

    assert response.status_code == 502


def test_remove_background(client, fakes):
    png = make_png()
    data_uri = f"data:image/png;base64,{base64.b64encode(png).decode()}"

    response = client.post("/api/remove-bg", json={"imageUrl": data_uri})

    assert response.status_code == 200
    (received,) = fakes.remover.calls
    assert received == ImageRef(data=png, mime_type="image/png")
    expected = ImageRef(data=png + b"-cutout", mime_type="image/png").to_data_uri()
    assert response.json()["url"] == expected


def test_remove_background_rejects_garbage(client, fakes):
    response = client.post("/api/remove-bg", json={"imageUrl": "%%%"})

    assert response.status_code == 400
    assert fakes.remover.calls == []


def test_remove_background_segmentation_failure(client, fakes):
    fakes.remover.fail = True
    payload = base64.b64encode(make_png()).decode()

    response = client.post("/api/remove-bg", json={"imageUrl": payload})

    assert response.status_code == 502


def test_generate_flyer(client, fakes):
    fakes.generator.fail_on = {2}

    response = client.post("/api/generate-flyer", json={"requirements": "Lantern festival"})

    assert response.status_code == 200
    body = response.json()
    assert body["summary"] == {"total": 2, "completed": 1, "failed": 1, "degraded": 0}
    assert [p["state"] for p in body["placeholders"]] == ["resolved", "failed"]
    assert body["placeholders"][0]["background_removed"] is True
    assert body["placeholders"][1]["width"] == 300
    assert 'data-x-image-failed="1"' in body["html"]


def test_generate_flyer_rejects_empty_brief(client, fakes):
    response = client.post("/api/generate-flyer", json={"requirements": ""})

    assert response.status_code == 400
    assert fakes.layout.calls == []


def test_generate_flyer_stream(client, fakes):
    with client.stream(
        "POST", "/api/generate-flyer/stream", json={"requirements": "Lantern festival"}
    ) as response:
        assert response.status_code == 200
        lines = [json.loads(line) for line in response.iter_lines() if line]

    progress = [line for line in lines if line["type"] == "progress"]
    assert [(p["stage"], p["status"]) for p in progress] == [
        ("layout", "started"),
        ("layout", "completed"),
        ("image", "started"),
        ("image", "resolved"),
        ("image", "started"),
        ("image", "resolved"),
    ]
    result = lines[-1]
    assert result["type"] == "result"
    assert result["summary"]["completed"] == 2


def test_generate_flyer_stream_reports_layout_failure(client, fakes):
    fakes.layout.error = UpstreamError("Gemini API Error: 500")

    with client.stream(
        "POST", "/api/generate-flyer/stream", json={"requirements": "Lantern festival"}
    ) as response:
        lines = [json.loads(line) for line in response.iter_lines() if line]

    assert lines[-1] == {"type": "error", "detail": "Gemini API Error: 500"}


def test_generate_flyer_stream_rejects_empty_brief(client, fakes):
    response = client.post("/api/generate-flyer/stream", json={"requirements": " "})

    assert response.status_code == 400


def test_remove_background_rejects_oversized_image(client, fakes, monkeypatch):
    def refuse(*args, **kwargs):
        raise Image.DecompressionBombError("Image size exceeds limit")

    monkeypatch.setattr(flyer.Image, "open", refuse)
    payload = base64.b64encode(make_png()).decode()

    response = client.post("/api/remove-bg", json={"imageUrl": payload})

    assert response.status_code == 400
    assert fakes.remover.calls == []


def test_generate_flyer_stream_reports_unexpected_failure(client, fakes):
    fakes.layout.error = RuntimeError("connection reset")

    with client.stream(
        "POST", "/api/generate-flyer/stream", json={"requirements": "Lantern festival"}
    ) as response:
        assert response.status_code == 200
        lines = [json.loads(line) for line in response.iter_lines() if line]

    assert (lines[0]["stage"], lines[0]["status"]) == ("layout", "started")
    assert lines[-1] == {"type": "error", "detail": "Flyer generation failed"}
