from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class PredictionOut:
    label: str
    confidence: float


@pydantic_dataclass(frozen=True)
class TimingsOut:
    preprocess_ms: float
    inference_ms: float
    visualization_ms: float
    total_ms: float


@pydantic_dataclass(frozen=True)
class ClassifyResponse:
    label: str
    confidence: float
    predictions: list[PredictionOut]
    probs: list[float]
    boost: float
    low_confidence: bool
    entropy_bits: float
    degenerate_map: bool
    visualization_fallback: bool
    composite_png_b64: str | None
    model_id: str | None
    timings: TimingsOut
    latency_ms: int


@pydantic_dataclass(frozen=True)
class LatestResultResponse:
    available: bool
    label: str | None = None
    confidence: float | None = None
    boost: float | None = None
    low_confidence: bool | None = None
    degenerate_map: bool | None = None
    model_id: str | None = None
    total_ms: float | None = None


@pydantic_dataclass(frozen=True)
class StatusResponse:
    items: list[str]
    max_items: int
