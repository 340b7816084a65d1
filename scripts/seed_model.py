from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import torch

from janken_cam.inference.engine import build_fresh_state_dict
from janken_cam.inference.manifest import ModelManifest
from janken_cam.logging import get_logger
from janken_cam.preprocess import DEFAULT_SIZE, preprocess_signature


@dataclass(frozen=True)
class SeedArgs:
    model_id: str
    out_dir: Path
    n_classes: int
    target_size: int
    seed: int


def parse_args(argv: list[str] | None = None) -> SeedArgs:
    ap = argparse.ArgumentParser(description="Write an untrained resnet18 model artifact")
    ap.add_argument("--model-id", default="janken_resnet18_v1", help="Model id folder name")
    ap.add_argument("--out-dir", default="./seed/janken/models", help="Destination models root")
    ap.add_argument("--n-classes", type=int, default=3, help="Classifier head size")
    ap.add_argument("--target-size", type=int, default=DEFAULT_SIZE, help="Input side length")
    ap.add_argument("--seed", type=int, default=0, help="Torch RNG seed")
    a = ap.parse_args(argv)
    return SeedArgs(
        model_id=str(a.model_id),
        out_dir=Path(str(a.out_dir)),
        n_classes=int(a.n_classes),
        target_size=int(a.target_size),
        seed=int(a.seed),
    )


def write_seed_model(args: SeedArgs) -> Path:
    """Write ``manifest.json`` + ``model.pt`` under ``out_dir/model_id``."""
    torch.manual_seed(args.seed)
    sd = build_fresh_state_dict("resnet18", args.n_classes)
    manifest = ModelManifest(
        schema_version="v1",
        model_id=args.model_id,
        arch="resnet18",
        n_classes=args.n_classes,
        version="0.0.0-seed",
        created_at=datetime.now(UTC),
        preprocess_hash=preprocess_signature(args.target_size),
        temperature=1.0,
    )
    dst = args.out_dir / args.model_id
    dst.mkdir(parents=True, exist_ok=True)
    torch.save(sd, (dst / "model.pt").as_posix())
    (dst / "manifest.json").write_text(
        json.dumps(manifest.to_dict(), indent=2), encoding="utf-8"
    )
    get_logger().info(
        "seed_model_written model_id=%s n_classes=%d dst=%s",
        args.model_id,
        args.n_classes,
        dst.as_posix(),
    )
    return dst


def main() -> None:  # pragma: no cover - tiny glue
    from janken_cam.logging import init_logging

    init_logging()
    write_seed_model(parse_args())


if __name__ == "__main__":
    main()
