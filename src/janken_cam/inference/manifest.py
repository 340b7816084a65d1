from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

SCHEMA_VERSION: Final[str] = "v1"
_REQUIRED_STR_FIELDS: Final[tuple[str, ...]] = (
    "schema_version",
    "model_id",
    "arch",
    "version",
    "preprocess_hash",
)


@dataclass(frozen=True)
class ModelManifest:
    """Metadata stored next to ``model.pt`` describing how to build and feed the model."""

    schema_version: str
    model_id: str
    arch: str
    n_classes: int
    version: str
    created_at: datetime
    preprocess_hash: str
    temperature: float = 1.0

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        return ModelManifest.from_dict({str(k): v for k, v in obj.items()})

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        text = {name: str(d.get(name, "")).strip() for name in _REQUIRED_STR_FIELDS}
        missing = [name for name, value in text.items() if not value]
        if missing:
            raise ValueError(f"manifest is missing required fields: {', '.join(missing)}")
        if text["schema_version"] != SCHEMA_VERSION:
            raise ValueError(f"unsupported manifest schema version: {text['schema_version']}")
        n_classes = int(str(d.get("n_classes", 3)))
        if n_classes < 2:
            raise ValueError("n_classes must be >= 2")
        temperature = float(str(d.get("temperature", 1.0)))
        if temperature <= 0.0:
            raise ValueError("temperature must be > 0")
        raw_created = str(d.get("created_at", "")).strip()
        created = datetime.fromisoformat(raw_created) if raw_created else datetime.now(UTC)
        return ModelManifest(
            schema_version=text["schema_version"],
            model_id=text["model_id"],
            arch=text["arch"],
            n_classes=n_classes,
            version=text["version"],
            created_at=created,
            preprocess_hash=text["preprocess_hash"],
            temperature=temperature,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "model_id": self.model_id,
            "arch": self.arch,
            "n_classes": int(self.n_classes),
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "preprocess_hash": self.preprocess_hash,
            "temperature": float(self.temperature),
        }
