"""Model manager for the ONNX Runtime backend.

Each configured model is a single ``<name>.onnx`` file in ``models_dir``. Files
that are missing locally are fetched from ``models_repo`` on the HuggingFace
Hub when one is configured. Sessions are created lazily, shared between
threads, and dropped once they have been idle for longer than ``model_ttl``
seconds (0 keeps them forever).
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from verifyx.config import Settings

logger = logging.getLogger(__name__)

Provider = str | tuple[str, dict[str, object]]


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """What the ONNX backend needs from a model store."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local path of a model file, fetching it if necessary."""
        ...

    def get_session(self, model_name: str) -> InferenceSession: ...

    def get_loaded_models(self) -> list[str]: ...

    def unload_idle_models(self) -> None:
        """Drop sessions idle for longer than the TTL."""
        ...

    def shutdown(self) -> None: ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    FACE_DETECTION = "face_detection"
    FACE_RECOGNITION = "face_recognition"
    FACE_QUALITY = "face_quality"
    ANTI_SPOOFING = "anti_spoofing"


@dataclass(frozen=True)
class ModelSpec:
    """Where a model file lives and what the engine uses it for."""

    name: str
    filename: str
    task: ModelTask


def build_registry(settings: Settings) -> dict[str, ModelSpec]:
    """Map every configured model name to its spec."""
    tasks = (
        (settings.face_detection.name, ModelTask.FACE_DETECTION),
        (settings.face_id.name, ModelTask.FACE_RECOGNITION),
        (settings.face_quality.name, ModelTask.FACE_QUALITY),
        (settings.anti_spoofing_crop.name, ModelTask.ANTI_SPOOFING),
        (settings.anti_spoofing_full.name, ModelTask.ANTI_SPOOFING),
    )
    return {name: ModelSpec(name=name, filename=f"{name}.onnx", task=task) for name, task in tasks}


def build_providers(settings: Settings) -> list[Provider]:
    """Execution providers for the configured device, CPU always last."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True

    if settings.device == "openvino":
        # OpenVINO optimizes the graph itself.
        from onnxruntime import GraphOptimizationLevel

        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedSession:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Resolves model files and keeps a TTL cache of inference sessions.

    Idle sessions are swept whenever a session is requested, so a long-running
    service releases models it stopped using without a background thread.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._registry = build_registry(settings)

        self._lock = threading.Lock()
        self._sessions: dict[str, _CachedSession] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = build_providers(settings)
        self._session_options = build_session_options(settings)

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        spec = self._get_spec(model_name)

        known = self._model_paths.get(model_name)
        if known is not None and known.exists():
            return known

        path = self._models_dir / spec.filename
        if not path.exists():
            path = self._download(spec)
        self._model_paths[model_name] = path
        return path

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the session for ``model_name``, loading it on first use."""
        self.unload_idle_models()

        session = self._touch(model_name)
        if session is not None:
            return session

        model_path = self.ensure_downloaded(model_name)
        logger.info("Loading %s from %s (providers=%s)", model_name, model_path, self._providers)
        loaded = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Another thread may have finished loading first; keep its session.
            cached = self._sessions.setdefault(model_name, _CachedSession(loaded, time.monotonic()))
            cached.last_used = time.monotonic()
            return cached.session

    def get_loaded_models(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def unload_idle_models(self) -> None:
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        deadline = time.monotonic() - ttl
        with self._lock:
            idle = [name for name, cached in self._sessions.items() if cached.last_used < deadline]
            for name in idle:
                del self._sessions[name]
        for name in idle:
            logger.info("Unloaded %s after %ss idle", name, ttl)

    def shutdown(self) -> None:
        with self._lock:
            count = len(self._sessions)
            self._sessions.clear()
        logger.info("Released %d model session(s)", count)

    # -- Internal -----------------------------------------------------------

    def _get_spec(self, model_name: str) -> ModelSpec:
        try:
            return self._registry[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def _touch(self, model_name: str) -> InferenceSession | None:
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is None:
                return None
            cached.last_used = time.monotonic()
            return cached.session

    def _download(self, spec: ModelSpec) -> Path:
        repo_id = self._settings.models_repo
        if repo_id is None:
            raise FileNotFoundError(
                f"Model file not found: {self._models_dir / spec.filename} (set VERIFYX_MODELS_REPO to download it)"
            )

        self._models_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Downloading %s from %s", spec.filename, repo_id)
        path = Path(hf_hub_download(repo_id=repo_id, filename=spec.filename, local_dir=str(self._models_dir)))
        logger.info("Downloaded %s to %s", spec.name, path)
        return path
