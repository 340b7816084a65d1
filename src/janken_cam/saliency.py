from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

import torch
import torch.nn.functional as F
from torch import Tensor

from .arena import TensorArena
from .config import VisionConfig
from .errors import InvalidInputError
from .inference.types import SaliencyMap
from .logging import get_logger

BOOST_FLOOR: Final[float] = 0.3
BOOST_CEIL: Final[float] = 1.0
_BOOST_GAIN: Final[float] = 2.0
REFERENCE_SIZE: Final[int] = 224
FALLBACK_RADIUS_PX: Final[float] = 80.0
# Resampling noise on a uniform image stays far below this
_FLAT_LUMINANCE_EPS: Final[float] = 1e-6


@dataclass(frozen=True)
class SaliencyOptions:
    input_size: tuple[int, int] = (REFERENCE_SIZE, REFERENCE_SIZE)
    output_size: tuple[int, int] = (REFERENCE_SIZE, REFERENCE_SIZE)
    # Fallback falloff radius, expressed at ``reference_size`` resolution
    fallback_radius_px: float = FALLBACK_RADIUS_PX
    reference_size: int = REFERENCE_SIZE

    @staticmethod
    def from_config(v: VisionConfig) -> SaliencyOptions:
        side = int(v.target_size)
        return SaliencyOptions(
            input_size=(side, side),
            output_size=(side, side),
            fallback_radius_px=float(v.fallback_radius_px),
        )


def synthesize(
    input_tensor: Tensor,
    probabilities: Sequence[float],
    opts: SaliencyOptions | None = None,
) -> SaliencyMap:
    """Confidence-modulated pseudo-saliency for one preprocessed image.

    The map is the image luminance weighted by a centered Gaussian whose
    intensity follows the top prediction score, min-max normalized to [0,1].
    A map with no dynamic range is replaced by a fixed radial falloff.
    """
    o = opts or SaliencyOptions()
    _validate_input(input_tensor, o.input_size)
    boost = confidence_boost(probabilities)
    log = get_logger()

    with TensorArena("saliency") as arena, torch.no_grad():
        hwc_in = input_tensor[0].to(dtype=torch.float32)
        hwc = arena.track(torch.nan_to_num(hwc_in, nan=0.0, posinf=1.0, neginf=0.0))
        height, width = int(hwc.shape[0]), int(hwc.shape[1])
        lum = arena.track(luminance_map(hwc))
        mask = arena.track(radial_mask(height, width, boost))
        raw = arena.track(lum * mask)

        raw_min = float(raw.min().item())
        raw_max = float(raw.max().item())
        lum_flat = float(lum.max().item()) - float(lum.min().item()) <= _FLAT_LUMINANCE_EPS
        log.debug(
            "saliency_raw_stats min=%.4f max=%.4f mean=%.4f coverage=%.3f boost=%.4f",
            raw_min,
            raw_max,
            float(raw.mean().item()),
            float((raw > 0).float().mean().item()),
            boost,
        )

        degenerate = raw_max - raw_min == 0.0 or lum_flat
        if degenerate:
            log.info("saliency_degenerate_map height=%d width=%d", height, width)
            normalized = arena.track(
                fallback_map(height, width, o.fallback_radius_px, o.reference_size)
            )
        else:
            normalized = arena.track((raw - raw_min) / (raw_max - raw_min))

        out = normalized
        if (height, width) != tuple(o.output_size):
            out = arena.track(resize_map(normalized, o.output_size))
        out = arena.track(out.clamp(0.0, 1.0))
        return SaliencyMap(values=arena.keep(out), boost=boost, degenerate=degenerate)


def confidence_boost(probabilities: Sequence[float]) -> float:
    """``clamp(max(p) * 2, 0.3, 1.0)``; non-finite scores count as 0."""
    if len(probabilities) == 0:
        raise InvalidInputError("probabilities must contain at least one score")
    top = max(_finite_or_zero(p) for p in probabilities)
    return min(BOOST_CEIL, max(BOOST_FLOOR, top * _BOOST_GAIN))


def luminance_map(hwc: Tensor) -> Tensor:
    """Per-pixel channel mean scaled by its global maximum. All zeros if black."""
    gray = hwc.mean(dim=2)
    peak = float(gray.max().item())
    if peak <= 0.0 or not math.isfinite(peak):
        return torch.zeros_like(gray)
    return gray / peak


def radial_mask(height: int, width: int, boost: float) -> Tensor:
    """Gaussian bump at the grid midpoint, ``sigma = min(h,w) / 6``, scaled by boost."""
    radius = min(height, width) / 3.0
    sigma = radius / 2.0
    d2 = _squared_distance_grid(height, width)
    return torch.exp(-d2 / (2.0 * sigma * sigma)) * float(boost)


def fallback_map(
    height: int,
    width: int,
    radius_px: float = FALLBACK_RADIUS_PX,
    reference_size: int = REFERENCE_SIZE,
) -> Tensor:
    """Linear radial falloff, 1 at the center and 0 at the scaled radius."""
    falloff = radius_px / float(reference_size) * min(height, width)
    dist = torch.sqrt(_squared_distance_grid(height, width))
    return (1.0 - dist / falloff).clamp(min=0.0)


def resize_map(values: Tensor, size: tuple[int, int]) -> Tensor:
    out = F.interpolate(
        values.unsqueeze(0).unsqueeze(0),
        size=(int(size[0]), int(size[1])),
        mode="bilinear",
        align_corners=False,
    )
    return out[0, 0]


def _squared_distance_grid(height: int, width: int) -> Tensor:
    cy = height // 2
    cx = width // 2
    ys = torch.arange(height, dtype=torch.float32).view(height, 1) - float(cy)
    xs = torch.arange(width, dtype=torch.float32).view(1, width) - float(cx)
    return ys * ys + xs * xs


def _finite_or_zero(p: float) -> float:
    v = float(p)
    return v if math.isfinite(v) else 0.0


def _validate_input(t: Tensor, expected: tuple[int, int]) -> None:
    if not isinstance(t, Tensor):
        raise InvalidInputError("input must be a tensor")
    shape = tuple(int(d) for d in t.shape)
    want = (1, int(expected[0]), int(expected[1]), 3)
    if shape != want:
        raise InvalidInputError(f"expected input shape {list(want)}, got {list(shape)}")
    if not t.is_floating_point():
        raise InvalidInputError(f"expected a floating point tensor, got {t.dtype}")
