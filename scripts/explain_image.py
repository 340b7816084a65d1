from __future__ import annotations

import argparse
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import anyio
from torch import Tensor

from janken_cam.config import Settings
from janken_cam.inference.engine import TorchClassifier
from janken_cam.inference.types import Classifier
from janken_cam.logging import get_logger
from janken_cam.pipeline import InferenceResult, PipelineOptions, run_inference
from janken_cam.preprocess import decode_image
from janken_cam.status import get_status

_STAND_IN_SCORES: Final[tuple[float, ...]] = (0.7, 0.2, 0.1)


@dataclass(frozen=True)
class ExplainArgs:
    image: Path
    out: Path
    model_dir: Path | None


class FixedClassifier:
    """Deterministic stand-in returning the same scores for every input."""

    def __init__(self, scores: tuple[float, ...] = _STAND_IN_SCORES) -> None:
        self._scores = scores

    async def predict(self, tensor: Tensor) -> tuple[float, ...]:
        return self._scores

    def release(self) -> None:
        return None


def parse_args(argv: list[str] | None = None) -> ExplainArgs:
    ap = argparse.ArgumentParser(description="Classify an image and save the saliency composite")
    ap.add_argument("image", help="Input image (PNG, JPEG or WebP)")
    ap.add_argument("--out", default="composite.png", help="Where to write the composite PNG")
    ap.add_argument(
        "--model-dir",
        default=None,
        help="Directory with manifest.json + model.pt; omit to use a fixed stand-in classifier",
    )
    a = ap.parse_args(argv)
    return ExplainArgs(
        image=Path(str(a.image)),
        out=Path(str(a.out)),
        model_dir=Path(str(a.model_dir)) if a.model_dir else None,
    )


def _build_classifier(settings: Settings, model_dir: Path | None) -> tuple[Classifier, str | None]:
    if model_dir is None:
        return FixedClassifier(), None
    clf = TorchClassifier(settings)
    if not clf.try_load(model_dir):
        clf.release()
        raise SystemExit(f"Could not load model from {model_dir.as_posix()}")
    return clf, clf.model_id


def explain(args: ExplainArgs, settings: Settings) -> InferenceResult:
    img = decode_image(args.image.read_bytes())
    classifier, model_id = _build_classifier(settings, args.model_dir)
    opts = PipelineOptions.from_config(settings.vision)

    async def _run() -> InferenceResult:
        return await run_inference(img, classifier, opts, model_id=model_id)

    try:
        result = anyio.run(_run)
    finally:
        classifier.release()
    if result.composite is not None:
        args.out.parent.mkdir(parents=True, exist_ok=True)
        result.composite.image.save(args.out.as_posix(), format="PNG")
    return result


def main() -> None:  # pragma: no cover - tiny glue
    from janken_cam.logging import init_logging

    init_logging()
    t0 = time.perf_counter()
    result = explain(parse_args(), Settings.load())
    log = get_logger()
    for p in result.predictions:
        log.info("prediction label=%s confidence=%.4f", p.label, p.confidence)
    for line in get_status().snapshot():
        print(line)
    log.info("explain_done elapsed_ms=%d", int((time.perf_counter() - t0) * 1000.0))


if __name__ == "__main__":
    main()
