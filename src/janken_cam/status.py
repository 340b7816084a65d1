from __future__ import annotations

import threading
from collections import deque
from datetime import datetime
from typing import Final

from .logging import get_logger

_DEFAULT_MAX_ITEMS: Final[int] = 10


class StatusBuffer:
    """Rolling buffer of the most recent pipeline status lines.

    Each entry is stamped ``HH:MM:SS: message``. Only the newest ``max_items``
    entries are kept; older ones fall off the front.
    """

    def __init__(self, max_items: int = _DEFAULT_MAX_ITEMS) -> None:
        if max_items <= 0:
            raise ValueError("max_items must be > 0")
        self._lock = threading.Lock()
        self._items: deque[str] = deque(maxlen=max_items)

    @property
    def max_items(self) -> int:
        maxlen = self._items.maxlen
        return int(maxlen) if maxlen is not None else _DEFAULT_MAX_ITEMS

    def add(self, message: str) -> str:
        line = f"{datetime.now().strftime('%H:%M:%S')}: {message}"
        get_logger().info("status %s", message)
        with self._lock:
            self._items.append(line)
        return line

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


_status: StatusBuffer | None = None
_status_lock = threading.Lock()


def init_status(max_items: int = _DEFAULT_MAX_ITEMS) -> StatusBuffer:
    """Create (or replace) the process status buffer with the given capacity."""
    global _status
    buf = StatusBuffer(max_items)
    with _status_lock:
        _status = buf
    return buf


def get_status() -> StatusBuffer:
    global _status
    with _status_lock:
        if _status is None:
            _status = StatusBuffer()
        return _status


def reset_status() -> None:
    get_status().clear()


def add_status(message: str) -> str:
    return get_status().add(message)
