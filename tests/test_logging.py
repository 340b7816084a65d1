from __future__ import annotations

import json
import logging
import os

from _pytest.capture import CaptureFixture

from janken_cam.logging import (
    _choose_formatter,
    _ConsoleFormatter,
    _JsonFormatter,
    _parse_evt_fields,
    init_logging,
    log_event,
)
from janken_cam.request_context import request_id_var


def _record(msg: str, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="janken_cam",
        level=level,
        pathname="t",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_parse_evt_fields_types() -> None:
    msg = (
        "EVT event=inference_finished latency_ms=42 label=rock confidence=0.9100 "
        "boost=1.0000 model_id=m1 low_confidence=false degenerate=true"
    )
    out = _parse_evt_fields(msg)
    assert out["event"] == "inference_finished"
    assert out["latency_ms"] == 42
    assert out["confidence"] == 0.91
    assert out["boost"] == 1.0
    assert out["low_confidence"] is False and out["degenerate"] is True
    assert _parse_evt_fields("plain message") == {}


def test_json_formatter_lifts_event_and_request_id() -> None:
    token = request_id_var.set("rid-1")
    try:
        out = _JsonFormatter().format(_record("EVT event=done label=paper confidence=0.5000"))
    finally:
        request_id_var.reset(token)
    obj = json.loads(out)
    assert obj["message"] == "done"
    assert obj["label"] == "paper"
    assert obj["confidence"] == 0.5
    assert obj["request_id"] == "rid-1"


def test_console_formatter_evt_line() -> None:
    msg = "EVT event=inference_finished label=rock boost=0.3000"
    out = _ConsoleFormatter().format(_record(msg))
    assert "[INFO]" in out
    assert "inference_finished" in out
    assert "label" in out and "rock" in out
    warn = _ConsoleFormatter().format(_record("low_confidence_prediction", logging.WARNING))
    assert "[WARN]" in warn


def test_choose_formatter_explicit_and_env() -> None:
    assert isinstance(_choose_formatter("json"), _JsonFormatter)
    assert isinstance(_choose_formatter("pretty"), _ConsoleFormatter)
    old = os.environ.get("JANKEN_LOG_JSON")
    try:
        os.environ["JANKEN_LOG_JSON"] = "1"
        assert isinstance(_choose_formatter("auto"), _JsonFormatter)
    finally:
        if old is None:
            os.environ.pop("JANKEN_LOG_JSON", None)
        else:
            os.environ["JANKEN_LOG_JSON"] = old


def test_log_event_writes_structured_line(capsys: CaptureFixture[str]) -> None:
    init_logging("json")
    log_event(
        "inference_finished",
        fields={
            "latency_ms": 12,
            "label": "rock paper",
            "confidence": 0.75,
            "boost": 1.0,
            "model_id": "m",
            "low_confidence": False,
            "degenerate": False,
            "ignored": object(),
        },
    )
    line = capsys.readouterr().out.strip().splitlines()[-1]
    obj = json.loads(line)
    assert obj["message"] == "inference_finished"
    assert obj["label"] == "rock_paper"
    assert obj["latency_ms"] == 12 and obj["confidence"] == 0.75
    assert obj["low_confidence"] is False
    assert "ignored" not in obj


def test_env_level_controls_logger() -> None:
    old = os.environ.get("JANKEN_LOG_LEVEL")
    try:
        os.environ["JANKEN_LOG_LEVEL"] = "debug"
        assert init_logging("json").level == logging.DEBUG
        os.environ["JANKEN_LOG_LEVEL"] = "nonsense"
        assert init_logging("json").level == logging.INFO
    finally:
        if old is None:
            os.environ.pop("JANKEN_LOG_LEVEL", None)
        else:
            os.environ["JANKEN_LOG_LEVEL"] = old
        init_logging()
