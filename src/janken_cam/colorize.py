from __future__ import annotations

from typing import Final

import torch
from torch import Tensor

from .arena import TensorArena
from .errors import InvalidInputError
from .inference.types import ColorBuffer, SaliencyMap

_RED_GAIN: Final[float] = 1.3
_GREEN_GAIN: Final[float] = 1.1
_BLUE_GAIN: Final[float] = 0.9
ALPHA_MAX: Final[int] = 200
_ALPHA_SPAN: Final[float] = 400.0

# Error-indicator disc, expressed at 224px resolution
_INDICATOR_RADIUS_PX: Final[float] = 50.0
_INDICATOR_REFERENCE: Final[int] = 224
_INDICATOR_RGBA: Final[tuple[int, int, int, int]] = (255, 0, 0, 100)


def colorize(
    smap: SaliencyMap | Tensor, expected_size: tuple[int, int] | None = None
) -> ColorBuffer:
    """Map saliency values to RGBA through a warm transfer function.

    Per value ``v``: ``r = (v - 0.2) * 2``, ``g = v * 1.8``, ``b = 1.2 - v * 2``,
    each clamped to [0,1], scaled to 8 bit with gains 1.3 / 1.1 / 0.9. Alpha grows
    with the channel sum and saturates at 200.
    """
    values = smap.values if isinstance(smap, SaliencyMap) else smap
    _validate_map(values, expected_size)

    with TensorArena("colorize") as arena, torch.no_grad():
        v = arena.track(torch.nan_to_num(values.to(dtype=torch.float64), nan=0.0).clamp(0.0, 1.0))
        r = arena.track(((v - 0.2) * 2.0).clamp(0.0, 1.0))
        g = arena.track((v * 1.8).clamp(0.0, 1.0))
        b = arena.track((1.2 - v * 2.0).clamp(0.0, 1.0))

        r8 = arena.track(_to_byte(r, _RED_GAIN))
        g8 = arena.track(_to_byte(g, _GREEN_GAIN))
        b8 = arena.track(_to_byte(b, _BLUE_GAIN))
        total = arena.track(r8 + g8 + b8)
        ratio = arena.track((total / _ALPHA_SPAN).clamp(max=1.0))
        alpha = arena.track(_round_half_up(float(ALPHA_MAX) * ratio))

        channels = [r8, g8, b8, alpha]
        rgba = arena.track(torch.stack(channels, dim=2).to(dtype=torch.uint8))
        return ColorBuffer(pixels=arena.keep(rgba))


def error_indicator(size: tuple[int, int]) -> ColorBuffer:
    """Fixed red disc over a transparent field, marking a failed visualization."""
    height, width = int(size[0]), int(size[1])
    if height <= 0 or width <= 0:
        raise InvalidInputError("indicator size must be positive")
    radius = _INDICATOR_RADIUS_PX / _INDICATOR_REFERENCE * min(height, width)
    ys = torch.arange(height, dtype=torch.float32).view(height, 1) - float(height // 2)
    xs = torch.arange(width, dtype=torch.float32).view(1, width) - float(width // 2)
    inside = (ys * ys + xs * xs) < radius * radius
    pixels = torch.zeros((height, width, 4), dtype=torch.uint8)
    pixels[inside] = torch.tensor(_INDICATOR_RGBA, dtype=torch.uint8)
    return ColorBuffer(pixels=pixels, fallback=True)


def _to_byte(channel01: Tensor, gain: float) -> Tensor:
    return _round_half_up((channel01 * 255.0 * gain).clamp(0.0, 255.0))


def _round_half_up(x: Tensor) -> Tensor:
    return torch.floor(x + 0.5)


def _validate_map(values: Tensor, expected_size: tuple[int, int] | None) -> None:
    if not isinstance(values, Tensor) or values.ndim != 2:
        raise InvalidInputError("saliency map must be a 2D tensor")
    if expected_size is not None:
        got = (int(values.shape[0]), int(values.shape[1]))
        if got != (int(expected_size[0]), int(expected_size[1])):
            raise InvalidInputError(
                f"saliency map size {list(got)} does not match {list(expected_size)}"
            )
