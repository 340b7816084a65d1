from __future__ import annotations

from typing import Final

from PIL import Image, ImageOps

from .errors import InvalidImageError, InvalidInputError
from .inference.types import ColorBuffer, CompositeImage

DEFAULT_OPACITY: Final[float] = 0.4


def composite(
    original: Image.Image, overlay: ColorBuffer, opacity: float = DEFAULT_OPACITY
) -> CompositeImage:
    """Blend the overlay over the original at its native resolution.

    The overlay is rescaled by PIL (bilinear) without touching its colors, its
    per-pixel alpha is multiplied by ``opacity`` and the result is alpha
    composited over the fully opaque original.
    """
    if not (0.0 <= opacity <= 1.0):
        raise InvalidInputError("opacity must be within [0,1]")
    width, height = original.size
    if width <= 0 or height <= 0:
        raise InvalidImageError("image has zero dimensions")
    oriented = ImageOps.exif_transpose(original)
    if oriented is None:
        raise InvalidImageError("EXIF transpose failed")
    base = oriented.convert("RGBA")

    layer = overlay.to_image()
    if layer.size != base.size:
        layer = layer.resize(base.size, resample=Image.Resampling.BILINEAR)
    alpha = layer.getchannel("A").point(lambda p: int(p * opacity + 0.5))
    layer.putalpha(alpha)
    return CompositeImage(image=Image.alpha_composite(base, layer))
