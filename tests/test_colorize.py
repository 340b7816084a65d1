from __future__ import annotations

import pytest
import torch

from janken_cam.colorize import ALPHA_MAX, colorize, error_indicator
from janken_cam.errors import InvalidInputError
from janken_cam.inference.types import SaliencyMap


def _ramp(h: int = 16, w: int = 32) -> torch.Tensor:
    return torch.linspace(0.0, 1.0, w).view(1, w).expand(h, w).contiguous()


def test_colorize_range_and_alpha_cap() -> None:
    buf = colorize(_ramp())
    assert buf.pixels.dtype == torch.uint8
    assert tuple(buf.pixels.shape) == (16, 32, 4)
    assert int(buf.pixels[..., 3].max()) <= ALPHA_MAX
    assert not buf.fallback


def test_colorize_endpoints() -> None:
    values = torch.tensor([[0.0, 1.0]])
    px = colorize(values).pixels
    # v=0: blue only, 255 * 0.9 = 229.5 rounds half up
    assert px[0, 0].tolist() == [0, 0, 230, 115]
    # v=1: red and green saturate, alpha capped
    assert px[0, 1].tolist() == [255, 255, 0, 200]


def test_colorize_midpoint() -> None:
    px = colorize(torch.tensor([[0.5]])).pixels
    # r = 0.6 -> 198.9, g = 0.9 -> 252.45, b = 0.2 -> 45.9
    assert px[0, 0].tolist() == [199, 252, 46, 200]


def test_colorize_is_idempotent() -> None:
    smap = SaliencyMap(values=_ramp(), boost=1.0, degenerate=False)
    a = colorize(smap)
    b = colorize(smap)
    assert torch.equal(a.pixels, b.pixels)


def test_colorize_rejects_bad_shapes() -> None:
    with pytest.raises(InvalidInputError):
        colorize(torch.zeros((2, 2, 2)))
    with pytest.raises(InvalidInputError):
        colorize(_ramp(), expected_size=(224, 224))


def test_colorize_guards_nan() -> None:
    values = torch.tensor([[float("nan"), 0.5]])
    px = colorize(values).pixels
    assert px[0, 0].tolist() == colorize(torch.tensor([[0.0]])).pixels[0, 0].tolist()


def test_error_indicator_is_red_disc() -> None:
    buf = error_indicator((224, 224))
    assert buf.fallback
    assert buf.pixels[112, 112].tolist() == [255, 0, 0, 100]
    assert buf.pixels[0, 0].tolist() == [0, 0, 0, 0]
    # radius 50px at 224
    assert buf.pixels[112, 112 + 49].tolist() == [255, 0, 0, 100]
    assert buf.pixels[112, 112 + 51].tolist() == [0, 0, 0, 0]
    with pytest.raises(InvalidInputError):
        error_indicator((0, 10))
