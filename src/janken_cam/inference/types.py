from __future__ import annotations

import io
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import torch
from PIL import Image
from torch import Tensor

Probs = Sequence[float]


@runtime_checkable
class Classifier(Protocol):
    """Opaque image classifier consumed by the pipeline.

    ``predict`` receives the preprocessed ``[1,224,224,3]`` tensor and resolves to
    one score per label. ``release`` frees whatever the model holds.
    """

    async def predict(self, tensor: Tensor) -> Probs: ...

    def release(self) -> None: ...


@dataclass(frozen=True)
class Prediction:
    label: str
    confidence: float  # clamped to [0,1]


@dataclass(frozen=True)
class SaliencyMap:
    values: Tensor  # [H,W] float32 in [0,1]
    boost: float
    degenerate: bool

    @property
    def size(self) -> tuple[int, int]:
        return int(self.values.shape[0]), int(self.values.shape[1])


@dataclass(frozen=True)
class ColorBuffer:
    pixels: Tensor  # [H,W,4] uint8 RGBA
    fallback: bool = False

    @property
    def size(self) -> tuple[int, int]:
        return int(self.pixels.shape[0]), int(self.pixels.shape[1])

    def to_image(self) -> Image.Image:
        h, w = self.size
        buf = bytes(self.pixels.to(dtype=torch.uint8).flatten().tolist())
        return Image.frombytes("RGBA", (w, h), buf)


@dataclass(frozen=True)
class CompositeImage:
    image: Image.Image  # RGBA at the original resolution

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size

    def to_png(self, max_kb: int | None = None) -> bytes | None:
        buf = io.BytesIO()
        self.image.save(buf, format="PNG", optimize=True)
        b = buf.getvalue()
        if max_kb is not None and len(b) > max_kb * 1024:
            return None
        return b
