from __future__ import annotations

import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final, TypeVar

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/janken.toml")
_DEFAULT_LABELS: Final[tuple[str, ...]] = ("rock", "scissors", "paper")

_T = TypeVar("_T", "AppConfig", "VisionConfig", "SecurityConfig")


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0  # 0 = min(8, cpu_count)
    port: int = 8081


@dataclass(frozen=True)
class VisionConfig:
    model_dir: Path = Path("/data/janken/models")
    active_model: str = "janken_resnet18_v1"
    target_size: int = 224
    labels: tuple[str, ...] = _DEFAULT_LABELS
    overlay_alpha: float = 0.4
    fallback_radius_px: float = 80.0
    low_confidence_threshold: float = 0.5
    status_buffer_size: int = 10
    max_image_mb: int = 4
    max_image_side_px: int = 4096
    visualize_max_kb: int = 2048

    @property
    def n_labels(self) -> int:
        return len(self.labels)


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables check
    api_key: str = ""


def _as_int(v: object) -> int:
    return int(str(v).strip())


def _as_float(v: object) -> float:
    return float(str(v).strip())


def _as_str(v: object) -> str:
    return str(v)


def _as_path(v: object) -> Path:
    return Path(str(v))


def _as_labels(v: object) -> tuple[str, ...]:
    if isinstance(v, list | tuple):
        return tuple(str(x).strip() for x in v if str(x).strip())
    return tuple(p.strip() for p in str(v).split(",") if p.strip())


# Field name -> parser; the same tables drive env (``SECTION__FIELD``) and TOML overrides
_APP_FIELDS: Final[dict[str, Callable[[object], object]]] = {
    "threads": _as_int,
    "port": _as_int,
}
_VISION_FIELDS: Final[dict[str, Callable[[object], object]]] = {
    "model_dir": _as_path,
    "active_model": _as_str,
    "target_size": _as_int,
    "labels": _as_labels,
    "overlay_alpha": _as_float,
    "fallback_radius_px": _as_float,
    "low_confidence_threshold": _as_float,
    "status_buffer_size": _as_int,
    "max_image_mb": _as_int,
    "max_image_side_px": _as_int,
    "visualize_max_kb": _as_int,
}
_SECURITY_FIELDS: Final[dict[str, Callable[[object], object]]] = {
    "api_key": _as_str,
}


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    vision: VisionConfig
    security: SecurityConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("JANKEN_CONFIG")
        return Path(env_val) if env_val else _DEFAULT_CONFIG_PATH

    @classmethod
    def default(cls) -> Settings:
        return cls(app=AppConfig(), vision=VisionConfig(), security=SecurityConfig())

    @classmethod
    def load(cls) -> Settings:
        """Defaults, then ``APP__``/``VISION__``/``SECURITY__`` env vars, then TOML.

        Raises ``RuntimeError`` on unreadable TOML or out-of-range values.
        """
        app = _apply(AppConfig(), _APP_FIELDS, _env_section("APP"))
        vision = _apply(VisionConfig(), _VISION_FIELDS, _env_section("VISION"))
        security = _apply(SecurityConfig(), _SECURITY_FIELDS, _env_section("SECURITY"))
        cfg_path = cls._toml_path()
        if cfg_path.exists():
            raw = _read_toml(cfg_path)
            app = _apply(app, _APP_FIELDS, _toml_table(raw, "app"))
            vision = _apply(vision, _VISION_FIELDS, _toml_table(raw, "vision"))
            security = _apply(
                security, _SECURITY_FIELDS, _coerce_security(_toml_table(raw, "security"))
            )
        _validate_app(app)
        _validate_vision(vision)
        return cls(app=app, vision=vision, security=security)


def _env_section(prefix: str) -> dict[str, object]:
    head = f"{prefix}__"
    return {
        k[len(head) :].lower(): v
        for k, v in os.environ.items()
        if k.startswith(head) and v.strip()
    }


def _apply(
    base: _T, fields: Mapping[str, Callable[[object], object]], data: Mapping[str, object]
) -> _T:
    changes: dict[str, object] = {}
    for name, parse in fields.items():
        if name not in data:
            continue
        try:
            changes[name] = parse(data[name])
        except ValueError as exc:
            raise RuntimeError(f"invalid value for {name}: {data[name]!r}") from exc
    return replace(base, **changes) if changes else base


def _read_toml(path: Path) -> dict[str, object]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise RuntimeError(f"Failed to read config TOML: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise RuntimeError(f"Invalid TOML config: {path}") from exc


def _toml_table(raw: Mapping[str, object], key: str) -> dict[str, object]:
    tab = raw.get(key, {})
    return {str(k): v for k, v in tab.items()} if isinstance(tab, dict) else {}


def _coerce_security(inp: dict[str, object]) -> dict[str, object]:
    out: dict[str, object] = {}
    api_key_val = inp.get("api_key")
    if isinstance(api_key_val, str):
        out["api_key"] = api_key_val
    # api_key_enabled = false wins over any configured key
    if inp.get("api_key_enabled") is False:
        out["api_key"] = ""
    return out


def _validate_app(a: AppConfig) -> None:
    if a.threads < 0:
        raise RuntimeError("threads must be >= 0")
    if not (1 <= a.port <= 65535):
        raise RuntimeError("port out of range")


def _validate_vision(v: VisionConfig) -> None:
    if v.target_size <= 0:
        raise RuntimeError("target_size must be > 0")
    if not v.labels:
        raise RuntimeError("labels must not be empty")
    if not (0.0 <= v.overlay_alpha <= 1.0):
        raise RuntimeError("overlay_alpha must be within [0,1]")
    if v.fallback_radius_px <= 0.0:
        raise RuntimeError("fallback_radius_px must be > 0")
    if v.status_buffer_size <= 0:
        raise RuntimeError("status_buffer_size must be > 0")
    if v.max_image_mb <= 0 or v.max_image_side_px <= 0:
        raise RuntimeError("image limits must be > 0")


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.vision.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.vision.max_image_side_px),
        )
