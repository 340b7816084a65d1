from __future__ import annotations

import io
from typing import Final

import torch
import torch.nn.functional as F
from PIL import Image, ImageOps, UnidentifiedImageError
from torch import Tensor

from .arena import TensorArena
from .errors import AppError, ErrorCode, InvalidImageError

DEFAULT_SIZE: Final[int] = 224
_PREPROCESS_SIGNATURE: Final[str] = "v1/rgb+bilinear{size}+div255+nhwc"
# Modes that go through RGBA so palette and gray alpha are dropped the same way
_VIA_RGBA_MODES: Final[frozenset[str]] = frozenset({"1", "L", "LA", "P", "PA"})
# 16-bit samples (also decoded as "I") scaled down to 0..255
_WIDE_TO_8BIT: Final[float] = 255.0 / 65535.0


def preprocess(img: Image.Image, size: int = DEFAULT_SIZE) -> Tensor:
    """Decoded image -> ``[1, size, size, 3]`` float32 tensor in [0,1].

    The image is stretched to the square target (no letterboxing) with bilinear
    interpolation, then divided by 255.
    """
    if size <= 0:
        raise ValueError("size must be > 0")
    rgb = _load_to_rgb(img)
    width, height = rgb.size
    with TensorArena("preprocess") as arena:
        try:
            raw = arena.track(torch.frombuffer(bytearray(rgb.tobytes()), dtype=torch.uint8))
            if int(raw.numel()) != width * height * 3:
                raise InvalidImageError("unexpected buffer size")
            hwc = arena.track(raw.reshape(height, width, 3).to(dtype=torch.float32))
            nchw = arena.track(hwc.permute(2, 0, 1).unsqueeze(0))
            resized = arena.track(
                F.interpolate(nchw, size=(size, size), mode="bilinear", align_corners=False)
            )
            scaled = arena.track((resized / 255.0).clamp(0.0, 1.0))
            return arena.keep(scaled.permute(0, 2, 3, 1).contiguous())
        except AppError:
            raise
        except (ValueError, RuntimeError, TypeError) as exc:
            raise InvalidImageError(str(exc)) from None


def preprocess_signature(size: int = DEFAULT_SIZE) -> str:
    return _PREPROCESS_SIGNATURE.format(size=size)


def decode_image(raw: bytes) -> Image.Image:
    """Open and fully decode uploaded bytes."""
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except UnidentifiedImageError:
        raise InvalidImageError("Failed to decode image") from None
    except Image.DecompressionBombError:
        raise AppError.of(ErrorCode.too_large, "Decompression bomb triggered") from None
    except (OSError, ValueError, SyntaxError) as exc:
        raise InvalidImageError(f"Failed to decode image: {exc}") from None
    return img


def _load_to_rgb(img: Image.Image) -> Image.Image:
    width, height = img.size
    if width <= 0 or height <= 0:
        raise InvalidImageError("image has zero dimensions")
    tmp = ImageOps.exif_transpose(img)
    if tmp is None:
        raise InvalidImageError("EXIF transpose failed")
    img2: Image.Image = tmp
    if img2.mode == "RGB":
        return img2
    try:
        if img2.mode == "F" or img2.mode == "I" or img2.mode.startswith("I;16"):
            img2 = _to_8bit(img2)
        # Alpha is dropped, not blended against a background
        if img2.mode in _VIA_RGBA_MODES:
            return img2.convert("RGBA").convert("RGB")
        return img2.convert("RGB")
    except (ValueError, OSError) as exc:
        raise InvalidImageError(f"cannot convert {img.mode} image to RGB: {exc}") from None


def _to_8bit(img: Image.Image) -> Image.Image:
    if img.mode == "F":
        # Float samples are taken as 0..255 and clipped, as PIL does
        return img.convert("L")
    wide = img if img.mode == "I" else img.convert("I")
    # point() truncates, so the half offset rounds to nearest
    return wide.point(lambda v: v * _WIDE_TO_8BIT + 0.5).convert("L")
