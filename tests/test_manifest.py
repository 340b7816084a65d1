from __future__ import annotations

import json
import tempfile
from pathlib import Path

import pytest

from janken_cam.inference.manifest import ModelManifest


def _base() -> dict[str, object]:
    return {
        "schema_version": "v1",
        "model_id": "janken_resnet18_v1",
        "arch": "resnet18",
        "n_classes": 3,
        "version": "1.0.0",
        "created_at": "2026-01-02T03:04:05+00:00",
        "preprocess_hash": "v1/rgb+bilinear224+div255+nhwc",
        "temperature": 1.5,
    }


def test_manifest_roundtrip_from_path() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "manifest.json"
        p.write_text(json.dumps(_base()), encoding="utf-8")
        man = ModelManifest.from_path(p)
    assert man.model_id == "janken_resnet18_v1"
    assert man.n_classes == 3 and man.temperature == pytest.approx(1.5)
    assert man.created_at.year == 2026
    assert ModelManifest.from_dict(man.to_dict()) == man


def test_manifest_defaults() -> None:
    d = _base()
    del d["n_classes"]
    del d["temperature"]
    man = ModelManifest.from_dict(d)
    assert man.n_classes == 3 and man.temperature == 1.0


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("schema_version", "v9"),
        ("model_id", " "),
        ("n_classes", 1),
        ("temperature", 0),
    ],
)
def test_manifest_rejects_invalid(key: str, value: object) -> None:
    d = _base()
    d[key] = value
    with pytest.raises(ValueError):
        ModelManifest.from_dict(d)


def test_manifest_json_must_be_object() -> None:
    with pytest.raises(ValueError):
        ModelManifest.from_json("[1, 2]")
