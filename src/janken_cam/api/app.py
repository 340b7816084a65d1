from __future__ import annotations

import asyncio
import base64
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Annotated, Final, Protocol

import anyio.to_thread
from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse
from PIL import Image, ImageFile
from starlette.datastructures import FormData

from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, new_error
from ..inference.engine import TorchClassifier
from ..inference.manifest import ModelManifest
from ..inference.types import Classifier
from ..logging import get_logger, init_logging
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..pipeline import InferenceResult, PipelineOptions, ResultSlot, run_inference
from ..preprocess import decode_image
from ..request_context import request_id_var
from ..status import get_status, init_status
from ..version import get_version
from .schemas import (
    ClassifyResponse,
    LatestResultResponse,
    PredictionOut,
    StatusResponse,
    TimingsOut,
)

ImageFile.LOAD_TRUNCATED_IMAGES = False

_SUPPORTED_CONTENT_TYPES: Final[frozenset[str]] = frozenset(
    {"image/png", "image/jpeg", "image/jpg", "image/webp"}
)


class ServingClassifier(Classifier, Protocol):
    """Classifier that also reports which model backs it."""

    @property
    def ready(self) -> bool: ...

    @property
    def model_id(self) -> str | None: ...

    @property
    def manifest(self) -> ModelManifest | None: ...


def _error_response(code: ErrorCode, http_status: int, message: str | None) -> JSONResponse:
    body = new_error(code, request_id_var.get(), message=message)
    return JSONResponse(status_code=http_status, content=body.to_dict())


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, AppError):
        return _error_response(exc.code, exc.http_status, exc.message)
    return _error_response(ErrorCode.internal_error, 500, str(exc))


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    # Message stays generic; details go to the log only
    get_logger().error("unhandled_error type=%s msg=%s", type(exc).__name__, exc)
    return _error_response(ErrorCode.internal_error, 500, None)


def _create_classifier(settings: Settings) -> TorchClassifier:
    clf = TorchClassifier(settings)
    clf.try_load()
    return clf


def _register_basic(app: FastAPI, classifier: ServingClassifier) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        man = classifier.manifest
        if classifier.ready:
            return {"status": "ready"}
        return {
            "status": "not_ready",
            "model_loaded": classifier.ready,
            "model_id": classifier.model_id,
            "manifest_schema_version": (man.schema_version if man is not None else None),
            "build": get_version().build,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_models(
    app: FastAPI, classifier: ServingClassifier, provide_settings: Callable[[], Settings]
) -> None:
    async def _model_active() -> dict[str, object]:
        man = classifier.manifest
        labels = list(provide_settings().vision.labels)
        if man is None:
            return {"model_loaded": False, "model_id": classifier.model_id, "labels": labels}
        return {
            "model_loaded": classifier.ready,
            "model_id": man.model_id,
            "arch": man.arch,
            "n_classes": man.n_classes,
            "version": man.version,
            "created_at": man.created_at.isoformat(),
            "schema_version": man.schema_version,
            "temperature": man.temperature,
            "labels": labels,
        }

    app.add_api_route("/v1/models/active", _model_active, methods=["GET"])


def _raise_if_too_large(raw: bytes, limits: Limits) -> None:
    if len(raw) > limits.max_bytes:
        raise AppError.of(ErrorCode.too_large, "File exceeds size limit")


def _strict_validate_multipart(form: FormData) -> None:
    for key in form:
        if key != "file":
            raise AppError.of(ErrorCode.malformed_multipart, "Unexpected form field")
    n_files = len(form.getlist("file"))
    if n_files != 1:
        msg = "Multiple file parts not allowed" if n_files > 1 else "Missing file part"
        raise AppError.of(ErrorCode.malformed_multipart, msg)


def _validate_image_dimensions(img: Image.Image, limits: Limits) -> None:
    w, h = img.size
    if max(w, h) > limits.max_side_px:
        raise AppError.of(ErrorCode.bad_dimensions, "Image dimensions too large")


def _ensure_supported_content_type(ctype: str) -> None:
    if ctype not in _SUPPORTED_CONTENT_TYPES:
        raise AppError.of(ErrorCode.unsupported_media_type, "Only PNG, JPEG and WebP are supported")


def _classify_payload(result: InferenceResult, png: bytes | None) -> dict[str, object]:
    t = result.timings
    return {
        "label": result.top.label,
        "confidence": float(result.top.confidence),
        "predictions": [
            PredictionOut(label=p.label, confidence=float(p.confidence))
            for p in result.predictions
        ],
        "probs": [float(p) for p in result.probabilities],
        "boost": float(result.boost),
        "low_confidence": bool(result.low_confidence),
        "entropy_bits": float(result.entropy_bits),
        "degenerate_map": bool(result.saliency.degenerate),
        "visualization_fallback": bool(result.visualization_fallback),
        "composite_png_b64": base64.b64encode(png).decode("ascii") if png else None,
        "model_id": result.model_id,
        "timings": TimingsOut(
            preprocess_ms=t.preprocess_ms,
            inference_ms=t.inference_ms,
            visualization_ms=t.visualization_ms,
            total_ms=t.total_ms,
        ),
        "latency_ms": int(t.total_ms),
    }


def _register_classify(
    app: FastAPI,
    dep_api_key: DependsParamType,
    provide_classifier: Callable[[], ServingClassifier],
    provide_settings: Callable[[], Settings],
    provide_limits: Callable[[], Limits],
    slot: ResultSlot,
) -> None:
    # One inference at a time; the pipeline and status buffer are process-scoped
    lock = asyncio.Lock()

    async def _classify(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        classifier = provide_classifier()
        settings = provide_settings()
        limits = provide_limits()

        form = await request.form()
        _strict_validate_multipart(form)
        _ensure_supported_content_type((file.content_type or "").lower())
        if content_length is not None and content_length > limits.max_bytes:
            raise AppError.of(ErrorCode.too_large, "Request body too large")

        raw = await file.read()
        _raise_if_too_large(raw, limits)
        img = decode_image(raw)
        _validate_image_dimensions(img, limits)

        if not classifier.ready:
            raise AppError.of(ErrorCode.service_not_ready)

        opts = PipelineOptions.from_config(settings.vision)
        async with lock:
            result = await run_inference(
                img,
                classifier,
                opts,
                slot=slot,
                status=get_status(),
                model_id=classifier.model_id,
            )
        comp = result.composite
        png = comp.to_png(settings.vision.visualize_max_kb) if comp is not None else None
        return _classify_payload(result, png)

    app.add_api_route(
        "/v1/classify",
        _classify,
        methods=["POST"],
        response_model=ClassifyResponse,
        dependencies=[dep_api_key],
    )


def _register_results(app: FastAPI, dep_api_key: DependsParamType, slot: ResultSlot) -> None:
    async def _latest() -> LatestResultResponse:
        r = slot.latest
        if r is None:
            return LatestResultResponse(available=False)
        return LatestResultResponse(
            available=True,
            label=r.top.label,
            confidence=float(r.top.confidence),
            boost=float(r.boost),
            low_confidence=bool(r.low_confidence),
            degenerate_map=bool(r.saliency.degenerate),
            model_id=r.model_id,
            total_ms=float(r.timings.total_ms),
        )

    async def _status() -> StatusResponse:
        buf = get_status()
        return StatusResponse(items=buf.snapshot(), max_items=buf.max_items)

    async def _status_reset() -> dict[str, bool]:
        get_status().clear()
        return {"ok": True}

    app.add_api_route(
        "/v1/results/latest", _latest, methods=["GET"], response_model=LatestResultResponse
    )
    app.add_api_route("/v1/status", _status, methods=["GET"], response_model=StatusResponse)
    app.add_api_route(
        "/v1/status/reset", _status_reset, methods=["POST"], dependencies=[dep_api_key]
    )


def create_app(
    settings: Settings | None = None,
    classifier_provider: Callable[[], ServingClassifier] | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads from env and TOML.
    - `classifier_provider`: Optional provider for a custom classifier (primarily for tests).
      When omitted, a `TorchClassifier` is built and the active model loaded if present.
    """
    s = settings or Settings.load()
    init_logging()
    init_status(s.vision.status_buffer_size)
    classifier: ServingClassifier = (
        classifier_provider() if classifier_provider is not None else _create_classifier(s)
    )

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        # Pool shutdown joins worker threads; keep it off the event loop
        await anyio.to_thread.run_sync(classifier.release)

    app = FastAPI(title="janken-cam", version=get_version().version, lifespan=_lifespan)
    app.add_middleware(RequestIdMiddleware)
    limits = Limits.from_settings(s)
    slot = ResultSlot()

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    def _provide_classifier() -> ServingClassifier:
        return classifier

    def _provide_settings() -> Settings:
        return s

    def _provide_limits() -> Limits:
        return limits

    # Providers on state so callers can swap collaborators
    app.state.provide_classifier = _provide_classifier
    app.state.provide_settings = _provide_settings
    app.state.provide_limits = _provide_limits
    app.state.result_slot = slot

    api_dep: DependsParamType = Depends(api_key_dependency(s))
    _register_basic(app, classifier)
    _register_models(app, classifier, _provide_settings)
    _register_classify(
        app, api_dep, _provide_classifier, _provide_settings, _provide_limits, slot
    )
    _register_results(app, api_dep, slot)

    return app


# Default ASGI app for uvicorn
app = create_app()
