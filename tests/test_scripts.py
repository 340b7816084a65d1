from __future__ import annotations

import io
import tempfile
from pathlib import Path

from PIL import Image

from explain_image import ExplainArgs, explain
from janken_cam.config import AppConfig, SecurityConfig, Settings, VisionConfig
from janken_cam.inference.engine import TorchClassifier
from seed_model import SeedArgs, parse_args, write_seed_model


def _write_png(path: Path) -> None:
    img = Image.new("RGB", (90, 60), (20, 40, 60))
    for x in range(30, 60):
        for y in range(60):
            img.putpixel((x, y), (240, 240, 240))
    b = io.BytesIO()
    img.save(b, format="PNG")
    path.write_bytes(b.getvalue())


def test_seed_model_is_loadable() -> None:
    with tempfile.TemporaryDirectory() as td:
        root = Path(td)
        args = parse_args(["--out-dir", root.as_posix()])
        assert args == SeedArgs(
            model_id="janken_resnet18_v1", out_dir=root, n_classes=3, target_size=224, seed=0
        )
        dst = write_seed_model(args)
        assert (dst / "manifest.json").exists() and (dst / "model.pt").exists()
        s = Settings(
            app=AppConfig(threads=1),
            vision=VisionConfig(model_dir=root),
            security=SecurityConfig(),
        )
        clf = TorchClassifier(s)
        try:
            assert clf.try_load()
        finally:
            clf.release()


def test_explain_with_stand_in_classifier() -> None:
    with tempfile.TemporaryDirectory() as td:
        root = Path(td)
        src = root / "in.png"
        out = root / "out" / "composite.png"
        _write_png(src)
        result = explain(ExplainArgs(image=src, out=out, model_dir=None), Settings.default())
        assert result.top.label == "rock"
        assert out.exists()
        assert Image.open(out).size == (90, 60)


def test_explain_with_seeded_model() -> None:
    with tempfile.TemporaryDirectory() as td:
        root = Path(td)
        dst = write_seed_model(
            SeedArgs(model_id="m", out_dir=root, n_classes=3, target_size=224, seed=1)
        )
        src = root / "in.png"
        _write_png(src)
        out = root / "c.png"
        result = explain(ExplainArgs(image=src, out=out, model_dir=dst), Settings.default())
        assert len(result.predictions) == 3
        assert result.model_id == "m"
        assert out.exists()
