from __future__ import annotations

import math
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Final

from PIL import Image
from torch import Tensor

from .arena import TensorArena, check_for_leaks
from .colorize import colorize, error_indicator
from .composite import DEFAULT_OPACITY, composite
from .config import VisionConfig
from .errors import InvalidInputError
from .inference.types import (
    Classifier,
    ColorBuffer,
    CompositeImage,
    Prediction,
    Probs,
    SaliencyMap,
)
from .logging import get_logger, log_event
from .preprocess import DEFAULT_SIZE, preprocess
from .saliency import SaliencyOptions, synthesize
from .status import StatusBuffer, get_status

DEFAULT_LABELS: Final[tuple[str, ...]] = ("rock", "scissors", "paper")
LOW_CONFIDENCE_THRESHOLD: Final[float] = 0.5
_ENTROPY_EPS: Final[float] = 1e-8
_VISUALIZE_ERRORS: Final[tuple[type[BaseException], ...]] = (
    InvalidInputError,
    ValueError,
    RuntimeError,
    TypeError,
    OSError,
    MemoryError,
)


@dataclass(frozen=True)
class PipelineOptions:
    labels: tuple[str, ...] = DEFAULT_LABELS
    target_size: int = DEFAULT_SIZE
    overlay_alpha: float = DEFAULT_OPACITY
    low_confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD
    saliency: SaliencyOptions = field(default_factory=SaliencyOptions)

    def __post_init__(self) -> None:
        # Saliency works on the preprocessed tensor, so its sizes follow target_size
        side = (int(self.target_size), int(self.target_size))
        s = self.saliency
        if s.input_size != side or s.output_size != side:
            object.__setattr__(self, "saliency", replace(s, input_size=side, output_size=side))

    @staticmethod
    def from_config(v: VisionConfig) -> PipelineOptions:
        return PipelineOptions(
            labels=tuple(v.labels),
            target_size=int(v.target_size),
            overlay_alpha=float(v.overlay_alpha),
            low_confidence_threshold=float(v.low_confidence_threshold),
            saliency=SaliencyOptions.from_config(v),
        )


@dataclass(frozen=True)
class StageTimings:
    preprocess_ms: float
    inference_ms: float
    visualization_ms: float
    total_ms: float


@dataclass(frozen=True)
class InferenceResult:
    predictions: tuple[Prediction, ...]  # descending confidence
    probabilities: tuple[float, ...]  # as returned by the classifier
    saliency: SaliencyMap
    overlay: ColorBuffer | None
    composite: CompositeImage | None
    low_confidence: bool
    entropy_bits: float
    timings: StageTimings
    model_id: str | None = None

    @property
    def top(self) -> Prediction:
        return self.predictions[0]

    @property
    def boost(self) -> float:
        return self.saliency.boost

    @property
    def visualization_fallback(self) -> bool:
        return self.overlay is None or self.overlay.fallback


class ResultSlot:
    """Holds the most recent inference result; each write replaces the last."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latest: InferenceResult | None = None

    @property
    def latest(self) -> InferenceResult | None:
        with self._lock:
            return self._latest

    def put(self, result: InferenceResult) -> None:
        with self._lock:
            self._latest = result

    def clear(self) -> None:
        with self._lock:
            self._latest = None


def rank_predictions(
    probabilities: Sequence[float], labels: Sequence[str]
) -> tuple[Prediction, ...]:
    """Pair scores with labels, clamp each to [0,1] and sort by confidence.

    Scores beyond the label count are ignored. Labels without a score are
    dropped; labels are taken positionally from the model output.
    """
    out: list[Prediction] = []
    for i, p in enumerate(list(probabilities)[: len(labels)]):
        v = float(p)
        conf = min(1.0, max(0.0, v)) if math.isfinite(v) else 0.0
        label = labels[i] if labels[i] else f"unknown-{i}"
        out.append(Prediction(label=label, confidence=conf))
    out.sort(key=lambda pr: pr.confidence, reverse=True)
    return tuple(out)


def prediction_entropy(predictions: Sequence[Prediction]) -> float:
    return -sum(p.confidence * math.log2(p.confidence + _ENTROPY_EPS) for p in predictions)


async def run_inference(
    image: Image.Image,
    classifier: Classifier,
    opts: PipelineOptions | None = None,
    *,
    slot: ResultSlot | None = None,
    status: StatusBuffer | None = None,
    model_id: str | None = None,
) -> InferenceResult:
    """Preprocess, classify, synthesize saliency, colorize and composite.

    Stages run strictly in order. Preprocessing, classification and saliency
    errors propagate to the caller; a failure while colorizing or compositing
    yields the error-indicator overlay instead, since the classification is
    still valid.
    """
    o = opts or PipelineOptions()
    st = status if status is not None else get_status()
    log = get_logger()
    t_start = time.perf_counter()
    try:
        st.add("inference started")
        with TensorArena("request") as arena:
            st.add("preprocessing image")
            tensor = arena.track(preprocess(image, o.target_size))
            log.debug("input_tensor shape=%s dtype=%s", list(tensor.shape), tensor.dtype)
            t_pre = time.perf_counter()

            st.add("running classifier")
            raw = _as_probabilities(await classifier.predict(tensor))
            t_inf = time.perf_counter()
            inference_ms = (t_inf - t_pre) * 1000.0
            st.add(f"classifier finished ({inference_ms:.2f}ms)")
            log.debug("raw_scores values=%s", ",".join(f"{p:.4f}" for p in raw))

            predictions = _checked_ranking(raw, o.labels)
            top = predictions[0]
            low_confidence = top.confidence < o.low_confidence_threshold
            if low_confidence:
                log.warning("low_confidence_prediction confidence=%.4f", top.confidence)
                st.add(f"low confidence prediction ({top.confidence * 100.0:.1f}%)")
            st.add(f"classified: {top.label} ({top.confidence * 100.0:.1f}%)")

            st.add("generating saliency overlay")
            smap = synthesize(tensor, raw, o.saliency)
            overlay, comp = _visualize(image, smap, o, st)
            t_vis = time.perf_counter()
            visualization_ms = (t_vis - t_inf) * 1000.0
            if comp is not None:
                st.add(f"visualization done ({visualization_ms:.2f}ms)")
            else:
                st.add("visualization failed")

        total_ms = (time.perf_counter() - t_start) * 1000.0
        result = InferenceResult(
            predictions=predictions,
            probabilities=raw,
            saliency=smap,
            overlay=overlay,
            composite=comp,
            low_confidence=low_confidence,
            entropy_bits=prediction_entropy(predictions),
            timings=StageTimings(
                preprocess_ms=(t_pre - t_start) * 1000.0,
                inference_ms=inference_ms,
                visualization_ms=visualization_ms,
                total_ms=total_ms,
            ),
            model_id=model_id,
        )
        st.add(f"all done ({total_ms:.0f}ms)")
        fields: dict[str, object] = {
            "latency_ms": int(total_ms),
            "label": top.label,
            "confidence": float(top.confidence),
            "boost": float(smap.boost),
            "low_confidence": bool(low_confidence),
            "degenerate": bool(smap.degenerate),
        }
        if model_id:
            fields["model_id"] = model_id
        log_event("inference_finished", fields=fields)
        if slot is not None:
            slot.put(result)
        return result
    except Exception as exc:
        st.add(f"inference failed: {exc}")
        raise
    finally:
        if check_for_leaks():
            st.add("many tensors still alive after request")


def _as_probabilities(raw: Probs | Tensor) -> tuple[float, ...]:
    if isinstance(raw, Tensor):
        return tuple(float(x) for x in raw.detach().flatten().tolist())
    return tuple(float(x) for x in raw)


def _checked_ranking(raw: tuple[float, ...], labels: tuple[str, ...]) -> tuple[Prediction, ...]:
    if len(raw) == 0:
        raise InvalidInputError("classifier returned no scores")
    if len(raw) < len(labels):
        get_logger().warning("classifier_short_output scores=%d labels=%d", len(raw), len(labels))
    return rank_predictions(raw, labels)


def _visualize(
    image: Image.Image, smap: SaliencyMap, o: PipelineOptions, st: StatusBuffer
) -> tuple[ColorBuffer | None, CompositeImage | None]:
    log = get_logger()
    try:
        overlay = colorize(smap, expected_size=tuple(o.saliency.output_size))
        return overlay, composite(image, overlay, o.overlay_alpha)
    except _VISUALIZE_ERRORS:
        log.exception("visualization_failed")
        st.add("visualization failed, drawing error indicator")
    try:
        indicator = error_indicator(smap.size)
        return indicator, composite(image, indicator, o.overlay_alpha)
    except _VISUALIZE_ERRORS:
        log.exception("visualization_fallback_failed")
        return None, None
