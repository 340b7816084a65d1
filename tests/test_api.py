from __future__ import annotations

import asyncio
import base64
import io
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from fastapi.testclient import TestClient
from PIL import Image
from torch import Tensor

from janken_cam.api.app import create_app
from janken_cam.config import AppConfig, SecurityConfig, Settings, VisionConfig
from janken_cam.inference.manifest import ModelManifest
from janken_cam.preprocess import preprocess_signature


class _StubClassifier:
    def __init__(self, scores: tuple[float, ...] = (0.1, 0.2, 0.7), ready: bool = True) -> None:
        self.scores = scores
        self._ready = ready
        self.released = False
        self.released_on_loop: bool | None = None
        self._manifest = ModelManifest(
            schema_version="v1",
            model_id="stub_model",
            arch="resnet18",
            n_classes=3,
            version="1.0.0",
            created_at=datetime.now(UTC),
            preprocess_hash=preprocess_signature(),
            temperature=1.0,
        )

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def model_id(self) -> str | None:
        return self._manifest.model_id if self._ready else None

    @property
    def manifest(self) -> ModelManifest | None:
        return self._manifest if self._ready else None

    async def predict(self, tensor: Tensor) -> tuple[float, ...]:
        return self.scores

    def release(self) -> None:
        self.released = True
        try:
            asyncio.get_running_loop()
            self.released_on_loop = True
        except RuntimeError:
            self.released_on_loop = False


def _settings(**vision: object) -> Settings:
    v = VisionConfig(**vision)  # type: ignore[arg-type]
    return Settings(app=AppConfig(), vision=v, security=SecurityConfig())


def _png_bytes(size: tuple[int, int] = (64, 48)) -> bytes:
    img = Image.new("RGB", size, (30, 60, 90))
    for x in range(size[0] // 4, size[0] // 2):
        for y in range(size[1]):
            img.putpixel((x, y), (250, 250, 250))
    b = io.BytesIO()
    img.save(b, format="PNG")
    return b.getvalue()


def test_routes_health_ready_version() -> None:
    stub = _StubClassifier()
    client = TestClient(create_app(_settings(), classifier_provider=lambda: stub))
    r1 = client.get("/healthz")
    assert r1.status_code == 200 and '"status":"ok"' in r1.text
    r2 = client.get("/readyz")
    assert r2.status_code == 200 and r2.json()["status"] == "ready"
    r3 = client.get("/version")
    assert r3.status_code == 200 and "janken-cam" in r3.text


def test_models_active_reports_manifest() -> None:
    stub = _StubClassifier()
    client = TestClient(create_app(_settings(), classifier_provider=lambda: stub))
    body = client.get("/v1/models/active").json()
    assert body["model_loaded"] is True
    assert body["model_id"] == "stub_model"
    assert body["labels"] == ["rock", "scissors", "paper"]


def test_classify_positive() -> None:
    stub = _StubClassifier()
    app = create_app(_settings(), classifier_provider=lambda: stub)
    client = TestClient(app)
    files = {"file": ("img.png", _png_bytes(), "image/png")}
    r = client.post("/v1/classify", files=files, headers={"X-Request-ID": "req-7"})
    assert r.status_code == 200
    assert r.headers["x-request-id"] == "req-7"
    body = r.json()
    assert body["label"] == "paper"
    assert [p["label"] for p in body["predictions"]] == ["paper", "scissors", "rock"]
    assert body["boost"] == 1.0
    assert body["low_confidence"] is False
    assert body["degenerate_map"] is False
    assert body["visualization_fallback"] is False
    assert body["model_id"] == "stub_model"
    assert set(body["timings"]) == {"preprocess_ms", "inference_ms", "visualization_ms", "total_ms"}
    png = base64.b64decode(body["composite_png_b64"])
    assert Image.open(io.BytesIO(png)).size == (64, 48)

    latest = client.get("/v1/results/latest").json()
    assert latest["available"] is True and latest["label"] == "paper"
    status = client.get("/v1/status").json()
    assert status["max_items"] == 10
    assert any("classified: paper" in line for line in status["items"])


def test_latest_and_status_reset() -> None:
    stub = _StubClassifier()
    client = TestClient(create_app(_settings(), classifier_provider=lambda: stub))
    assert client.get("/v1/results/latest").json()["available"] is False
    client.post("/v1/classify", files={"file": ("a.png", _png_bytes(), "image/png")})
    assert client.get("/v1/status").json()["items"]
    assert client.post("/v1/status/reset").json() == {"ok": True}
    assert client.get("/v1/status").json()["items"] == []


def test_classify_not_ready_returns_503() -> None:
    stub = _StubClassifier(ready=False)
    client = TestClient(create_app(_settings(), classifier_provider=lambda: stub))
    r = client.post("/v1/classify", files={"file": ("a.png", _png_bytes(), "image/png")})
    assert r.status_code == 503 and '"code":"service_not_ready"' in r.text
    ready = client.get("/readyz").json()
    assert ready["status"] == "not_ready" and ready["model_loaded"] is False


def test_classify_rejects_bad_uploads() -> None:
    stub = _StubClassifier()
    s = _settings(max_image_mb=1, max_image_side_px=128)
    client = TestClient(create_app(s, classifier_provider=lambda: stub))
    r1 = client.post("/v1/classify", files={"file": ("x.txt", b"hello", "text/plain")})
    assert r1.status_code == 415
    r2 = client.post("/v1/classify", files={"file": ("x.png", b"not a png", "image/png")})
    assert r2.status_code == 400 and '"code":"invalid_image"' in r2.text
    big = b"0" * (1024 * 1024 + 1)
    r3 = client.post("/v1/classify", files={"file": ("big.png", big, "image/png")})
    assert r3.status_code == 413
    r4 = client.post(
        "/v1/classify", files={"file": ("wide.png", _png_bytes((256, 16)), "image/png")}
    )
    assert r4.status_code == 400 and '"code":"bad_dimensions"' in r4.text
    files = {"file": ("a.png", _png_bytes(), "image/png")}
    r5 = client.post("/v1/classify", files=files, data={"note": "extra"})
    assert r5.status_code == 400 and '"code":"malformed_multipart"' in r5.text


def test_classifier_failure_maps_to_500() -> None:
    class _Broken(_StubClassifier):
        async def predict(self, tensor: Tensor) -> tuple[float, ...]:
            raise RuntimeError("inference backend down")

    stub = _Broken()
    client = TestClient(
        create_app(_settings(), classifier_provider=lambda: stub), raise_server_exceptions=False
    )
    r = client.post("/v1/classify", files={"file": ("a.png", _png_bytes(), "image/png")})
    assert r.status_code == 500 and '"code":"internal_error"' in r.text


def test_api_key_required_when_configured() -> None:
    s = Settings(app=AppConfig(), vision=VisionConfig(), security=SecurityConfig(api_key="k"))
    stub = _StubClassifier()
    client = TestClient(create_app(s, classifier_provider=lambda: stub))
    files = {"file": ("a.png", _png_bytes(), "image/png")}
    assert client.post("/v1/classify", files=files).status_code == 401
    ok = client.post("/v1/classify", files=files, headers={"X-API-Key": "k"})
    assert ok.status_code == 200
    assert client.post("/v1/status/reset").status_code == 401


def test_shutdown_releases_classifier() -> None:
    stub = _StubClassifier()
    with TestClient(create_app(_settings(), classifier_provider=lambda: stub)) as client:
        assert client.get("/healthz").status_code == 200
    assert stub.released
    assert stub.released_on_loop is False


def test_default_classifier_without_artifacts_is_not_ready() -> None:
    with tempfile.TemporaryDirectory() as td:
        client = TestClient(create_app(_settings(model_dir=Path(td))))
        body = client.get("/readyz").json()
        assert body["status"] == "not_ready"
        r = client.post("/v1/classify", files={"file": ("a.png", _png_bytes(), "image/png")})
        assert r.status_code == 503
