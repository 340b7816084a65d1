from __future__ import annotations

import threading
from types import TracebackType
from typing import Final
from weakref import WeakSet

from torch import Tensor

from .logging import get_logger

LEAK_WARN_THRESHOLD: Final[int] = 50

_open_arenas: WeakSet[TensorArena] = WeakSet()
_open_lock = threading.Lock()


class TensorArena:
    """Owns the intermediate tensors of one pipeline stage.

    Usage::

        with TensorArena("saliency") as arena:
            lum = arena.track(x.mean(dim=2))
            ...
            return arena.keep(result)

    Every tracked tensor is released when the block exits, on success and on
    error alike. ``keep`` hands back a fresh copy that is not owned by the arena,
    so it is the only value that outlives the stage.
    """

    def __init__(self, stage: str) -> None:
        self.stage = stage
        self._tensors: list[Tensor] = []
        self._closed = False
        self.released = 0

    def __enter__(self) -> TensorArena:
        with _open_lock:
            _open_arenas.add(self)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def live(self) -> int:
        return len(self._tensors)

    @property
    def closed(self) -> bool:
        return self._closed

    def track(self, t: Tensor) -> Tensor:
        if self._closed:
            raise RuntimeError(f"arena {self.stage} is closed")
        self._tensors.append(t)
        return t

    def keep(self, t: Tensor) -> Tensor:
        return t.detach().clone()

    def close(self) -> None:
        if self._closed:
            return
        n = len(self._tensors)
        self._tensors.clear()
        self._closed = True
        self.released = n
        with _open_lock:
            _open_arenas.discard(self)
        get_logger().debug("arena_released stage=%s tensors=%d", self.stage, n)


def live_tensor_count() -> int:
    """Number of tensors still held by arenas that have not been torn down."""
    with _open_lock:
        arenas = list(_open_arenas)
    return sum(a.live for a in arenas)


def check_for_leaks(threshold: int = LEAK_WARN_THRESHOLD) -> bool:
    n = live_tensor_count()
    if n > threshold:
        get_logger().warning("arena_leak_suspected live_tensors=%d threshold=%d", n, threshold)
        return True
    return False
