from __future__ import annotations

import asyncio
import os
import pickle
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Final, Protocol

import torch
from torch import Tensor

from ..config import Settings
from ..errors import ClassifierNotReadyError, InvalidInputError
from ..logging import get_logger
from .manifest import ModelManifest

_RESNET_FEATURES: Final[int] = 512
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)


class TorchClassifier:
    """Hand-sign classifier running a Torch CPU model on a bounded thread pool.

    Satisfies the ``Classifier`` protocol: ``predict`` is awaitable and
    ``release`` drops the model and stops the pool.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._logger = get_logger()
        self._pool: ThreadPoolExecutor | None = _make_pool(settings)
        self._model_lock = threading.RLock()
        self._model: TorchModel | None = None
        self._manifest: ModelManifest | None = None
        torch.set_num_threads(1)

    @property
    def ready(self) -> bool:
        return self._model is not None and self._manifest is not None and self._pool is not None

    @property
    def model_id(self) -> str | None:
        return self._manifest.model_id if self._manifest is not None else None

    @property
    def manifest(self) -> ModelManifest | None:
        return self._manifest

    async def predict(self, tensor: Tensor) -> tuple[float, ...]:
        pool = self._pool
        if pool is None:
            raise ClassifierNotReadyError("Classifier has been released")
        fut = pool.submit(self._predict_impl, tensor)
        return await asyncio.wrap_future(fut)

    def _predict_impl(self, tensor: Tensor) -> tuple[float, ...]:
        with self._model_lock:
            man = self._manifest
            model_obj = self._model
        if man is None or model_obj is None:
            raise ClassifierNotReadyError()
        batch = _to_nchw(tensor)
        model_obj.eval()
        with torch.no_grad():
            logits = model_obj(batch)
        return tuple(_softmax(logits, float(man.temperature)))

    def try_load(self, model_dir: Path | None = None) -> bool:
        """Load ``manifest.json`` + ``model.pt`` from ``model_dir``.

        Defaults to the configured active model. Returns readiness; incompatible
        or unreadable artifacts leave the current model in place.
        """
        v = self._settings.vision
        target = model_dir if model_dir is not None else v.model_dir / v.active_model
        manifest_path = target / "manifest.json"
        model_path = target / "model.pt"
        if not (manifest_path.exists() and model_path.exists()):
            self._logger.info("model_artifacts_missing dir=%s", target.as_posix())
            return self.ready
        try:
            manifest = ModelManifest.from_path(manifest_path)
        except (OSError, ValueError, KeyError):
            self._logger.info("manifest_load_failed dir=%s", target.as_posix())
            return self.ready
        from ..preprocess import preprocess_signature

        if manifest.preprocess_hash != preprocess_signature(v.target_size):
            self._logger.info("manifest_preprocess_mismatch model_id=%s", manifest.model_id)
            return self.ready
        if int(manifest.n_classes) < v.n_labels:
            self._logger.info(
                "manifest_too_few_classes model_id=%s n_classes=%d labels=%d",
                manifest.model_id,
                manifest.n_classes,
                v.n_labels,
            )
            return self.ready
        try:
            sd = _load_state_dict_file(model_path)
        except _LOAD_ERRORS:
            self._logger.info("state_dict_load_failed model_id=%s", manifest.model_id)
            return self.ready
        try:
            _validate_state_dict(sd, int(manifest.n_classes))
            model = _build_model(arch=manifest.arch, n_classes=int(manifest.n_classes))
            model.load_state_dict(sd)
        except (ValueError, RuntimeError):
            self._logger.info("state_dict_invalid model_id=%s", manifest.model_id)
            return self.ready
        with self._model_lock:
            self._model = model
            self._manifest = manifest
        self._logger.info("model_loaded model_id=%s arch=%s", manifest.model_id, manifest.arch)
        return self.ready

    def release(self) -> None:
        with self._model_lock:
            self._model = None
            self._manifest = None
            pool = self._pool
            self._pool = None
        if pool is not None:
            pool.shutdown(wait=True)
            self._logger.info("classifier_released")


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    size = settings.app.threads or min(8, os.cpu_count() or 1)
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict")


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...
    def load_state_dict(self, sd: dict[str, Tensor]) -> object: ...


def _build_model(arch: str, n_classes: int) -> TorchModel:
    if arch != "resnet18":
        raise ValueError(f"unsupported arch: {arch}")
    from torchvision.models import resnet18

    model: TorchModel = resnet18(weights=None, num_classes=int(n_classes))
    return model


def _as_tensor_dict(obj: object) -> dict[str, Tensor]:
    if not isinstance(obj, dict):
        raise ValueError("expected a state dict mapping")
    bad = [k for k, v in obj.items() if not (isinstance(k, str) and torch.is_tensor(v))]
    if bad:
        raise ValueError(f"state dict has {len(bad)} non-tensor entries")
    return dict(obj)


def build_fresh_state_dict(arch: str, n_classes: int) -> dict[str, Tensor]:
    """Untrained weights for ``arch`` with an ``n_classes`` head."""
    model = _build_model(arch=arch, n_classes=n_classes)
    state = getattr(model, "state_dict", None)
    if not callable(state):
        raise ValueError(f"model for {arch} exposes no state_dict")
    return _as_tensor_dict(state())


def _to_nchw(x: Tensor) -> Tensor:
    # Pipeline tensors are NHWC [1,H,W,3]; torchvision expects NCHW
    if x.ndim != 4 or int(x.shape[0]) != 1 or int(x.shape[3]) != 3:
        raise InvalidInputError(f"expected [1,H,W,3] input, got {list(x.shape)}")
    return x.permute(0, 3, 1, 2).contiguous().to(dtype=torch.float32)


def _softmax(logits: Tensor, temperature: float) -> list[float]:
    probs = torch.softmax(logits / temperature, dim=1)[0]
    return [float(p) for p in probs.tolist()]


def _load_state_dict_file(path: Path) -> dict[str, Tensor]:
    loaded: object = torch.load(path.as_posix(), map_location="cpu", weights_only=True)
    # Training checkpoints wrap the weights as {"state_dict": ...}
    if isinstance(loaded, dict) and "state_dict" in loaded:
        loaded = loaded["state_dict"]
    return _as_tensor_dict(loaded)


def _expected_shapes(n_classes: int) -> dict[str, tuple[int, ...]]:
    return {
        "conv1.weight": (64, 3, 7, 7),
        "bn1.weight": (64,),
        "bn1.bias": (64,),
        "fc.weight": (n_classes, _RESNET_FEATURES),
        "fc.bias": (n_classes,),
    }


def _validate_state_dict(sd: dict[str, Tensor], n_classes: int) -> None:
    """Reject weights that would not fit a resnet18 RGB stem with ``n_classes`` outputs."""
    for key, shape in _expected_shapes(n_classes).items():
        tensor = sd.get(key)
        if tensor is None:
            raise ValueError(f"state dict is missing {key}")
        if tuple(int(d) for d in tensor.shape) != shape:
            raise ValueError(f"{key} has shape {list(tensor.shape)}, expected {list(shape)}")
    missing = [i for i in range(1, 5) if not any(k.startswith(f"layer{i}.") for k in sd)]
    if missing:
        raise ValueError(f"state dict is missing resnet blocks {missing}")
