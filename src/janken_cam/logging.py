from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, TypedDict

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "janken_cam"
_EVT_PREFIX: Final[str] = "EVT "

LogStyle = Literal["json", "pretty", "auto"]


class LogEvent(TypedDict, total=False):
    event: str
    latency_ms: int
    label: str
    confidence: float
    boost: float
    model_id: str
    low_confidence: bool
    degenerate: bool


# Field order and type for EVT lines; anything else passed to log_event is dropped
_EVT_FIELDS: Final[tuple[tuple[str, type], ...]] = (
    ("latency_ms", int),
    ("label", str),
    ("confidence", float),
    ("boost", float),
    ("model_id", str),
    ("low_confidence", bool),
    ("degenerate", bool),
)
_EVT_TYPES: Final[dict[str, type]] = dict(_EVT_FIELDS)


def log_event(event: str, fields: Mapping[str, object] | None = None) -> None:
    """Emit one ``EVT event=<name> key=value ...`` line on the project logger.

    Values are rendered so the line stays whitespace-separated: floats with four
    decimals, booleans as ``true``/``false``, spaces in strings replaced by ``_``.
    """
    tokens = [f"event={event}"]
    for key, kind in _EVT_FIELDS:
        if fields is None or key not in fields:
            continue
        rendered = _render_evt_value(fields[key], kind)
        if rendered is not None:
            tokens.append(f"{key}={rendered}")
    get_logger().info(_EVT_PREFIX + " ".join(tokens))


def _render_evt_value(value: object, kind: type) -> str | None:
    if kind is bool:
        return ("true" if value else "false") if isinstance(value, bool) else None
    if kind is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
        return str(value) if ok else None
    if kind is float:
        return f"{value:.4f}" if isinstance(value, float) else None
    return value.replace(" ", "_") if isinstance(value, str) else None


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not isinstance(msg, str) or not msg.startswith(_EVT_PREFIX):
        return {}
    out: dict[str, object] = {}
    for tok in msg[len(_EVT_PREFIX) :].split():
        key, sep, raw = tok.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        out[key] = _coerce_evt_value(key, raw)
    return out


def _coerce_evt_value(key: str, raw: str) -> object:
    kind = _EVT_TYPES.get(key)
    if kind is int and raw.isdigit():
        return int(raw)
    if kind is float and _is_float_str(raw):
        return float(raw)
    if kind is bool:
        return raw.lower() in {"1", "true", "yes"}
    return raw


def _is_float_str(s: str) -> bool:
    # Unsigned decimals only: 0.5, 1, 1.0
    return bool(s) and s.count(".") <= 1 and s.replace(".", "", 1).isdigit()


class _JsonFormatter(logging.Formatter):
    """One JSON object per record; EVT fields are lifted to top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg,
        }
        rid = request_id_var.get()
        if rid:
            payload["request_id"] = rid
        fields = _parse_evt_fields(msg)
        if "event" in fields:
            payload["message"] = str(fields.pop("event"))
        payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


_RESET: Final[str] = "\x1b[0m"
_BOLD: Final[str] = "\x1b[1m"
_DIM: Final[str] = "\x1b[2m"
_GRAY: Final[str] = "\x1b[90m"
_RED: Final[str] = "\x1b[91m"
_GREEN: Final[str] = "\x1b[92m"
_YELLOW: Final[str] = "\x1b[93m"
_BLUE: Final[str] = "\x1b[94m"
_MAGENTA: Final[str] = "\x1b[95m"
_CYAN: Final[str] = "\x1b[36m"
_WHITE: Final[str] = "\x1b[97m"

# Highest threshold first
_LEVEL_TAGS: Final[tuple[tuple[int, str, str], ...]] = (
    (logging.CRITICAL, "CRIT", _MAGENTA),
    (logging.ERROR, "ERROR", _RED),
    (logging.WARNING, "WARN", _YELLOW),
    (logging.INFO, "INFO", _CYAN),
    (logging.NOTSET, "DEBUG", _GRAY),
)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line output for terminals.

    The first bare token of a message is shown as the event name, ``key=value``
    tokens get a dim key and a value colored by kind, everything else is kept
    as trailing text.
    """

    def format(self, record: logging.LogRecord) -> str:
        event, pairs, tail = _split_console_message(record.getMessage())
        parts = [f"{_DIM}[{datetime.now(UTC).strftime('%H:%M:%S')}]{_RESET}"]
        parts.append(_level_tag(record.levelno))
        if record.name and record.name != _LOGGER_NAME:
            parts.append(f"{_DIM}{_GRAY}{record.name}{_RESET}")
        if event:
            parts.append(f"{_BOLD}{_BLUE}{event}{_RESET}")
        parts.extend(f"{_DIM}{_CYAN}{k}{_RESET}={_color_value(k, v)}" for k, v in pairs)
        if tail:
            parts.append(tail)
        if record.exc_info:
            parts.append(f"\n{_RED}{self.formatException(record.exc_info)}{_RESET}")
        line = " ".join(parts)
        rid = request_id_var.get()
        return f"{line} {_DIM}{_GRAY}rid={rid}{_RESET}" if rid else line


def _level_tag(level: int) -> str:
    for threshold, name, color in _LEVEL_TAGS:
        if level >= threshold:
            return f"{_BOLD}{color}[{name}]{_RESET}"
    return f"{_BOLD}{_GRAY}[DEBUG]{_RESET}"


def _split_console_message(msg: str) -> tuple[str | None, list[tuple[str, str]], str | None]:
    if msg.startswith(_EVT_PREFIX):
        fields = _parse_evt_fields(msg)
        name = str(fields.pop("event", "event"))
        pairs = [(k, str(v).lower() if isinstance(v, bool) else str(v)) for k, v in fields.items()]
        return name, pairs, None
    toks = msg.split()
    if not toks:
        return None, [], msg or None
    event: str | None = None
    if "=" not in toks[0]:
        event, toks = toks[0], toks[1:]
    pairs: list[tuple[str, str]] = []
    rest: list[str] = []
    for tok in toks:
        key, sep, val = tok.partition("=")
        if sep and key.strip():
            pairs.append((key.strip(), val))
        else:
            rest.append(tok)
    return event, pairs, (" ".join(rest) if rest else None)


def _color_value(key: str, value: str) -> str:
    k = key.lower()
    v = value.strip()
    if k.endswith("_ms") or k.endswith("_s") or "time" in k:
        color = _MAGENTA
    elif v.lower() in {"true", "false"}:
        color = _CYAN
    elif k in {"confidence", "boost"} or _is_float_str(v):
        color = _GREEN
    else:
        color = _WHITE
    return f"{color}{v}{_RESET}"


def _env_truthy(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on", "y"}


def _env_level() -> int:
    name = os.environ.get("JANKEN_LOG_LEVEL", "").strip().upper()
    level = logging.getLevelNamesMapping().get(name) if name else None
    return level if isinstance(level, int) and level > logging.NOTSET else logging.INFO


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()
    if _env_truthy("JANKEN_LOG_JSON"):
        return _JsonFormatter()
    isatty = getattr(sys.stdout, "isatty", None)
    interactive = callable(isatty) and bool(isatty())
    if _env_truthy("JANKEN_LOG_PRETTY") or interactive:
        return _ConsoleFormatter()
    return _JsonFormatter()


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Configure the ``janken_cam`` logger with a single stdout handler.

    Safe to call repeatedly: earlier stream handlers are replaced, so the handler
    always writes to the current ``sys.stdout`` (pytest swaps it per test).
    """
    logger = logging.getLogger(_LOGGER_NAME)
    level = _env_level()
    logger.setLevel(level)
    logger.propagate = _env_truthy("JANKEN_LOG_PROPAGATE")
    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(level)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)
