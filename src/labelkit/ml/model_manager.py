"""Model manager: locate, download, load, cache, and evict ONNX models.

Model and label files live in a local models directory. When a Hugging Face
repository is configured, missing files are downloaded from it. Loaded
InferenceSessions are cached and evicted after an idle TTL.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import (
    ExecutionMode,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    NoSuchFile,
)

from labelkit.errors import ConfigurationError
from labelkit.ml.encoding import ModelIOSpec, TensorEncoding
from labelkit.ml.ranking import OutputMode

if TYPE_CHECKING:
    from labelkit.config import Settings

logger = logging.getLogger(__name__)

CPU_PROVIDER = "CPUExecutionProvider"

# What onnxruntime raises for unreadable, corrupt, or unsupported model files.
SESSION_LOAD_ERRORS = (Fail, InvalidArgument, InvalidGraph, InvalidProtobuf, NoSuchFile)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is available locally and return its file path."""
        ...

    def ensure_labels(self, model_name: str) -> Path:
        """Ensure a model's label file is available locally and return its path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def unload_idle_models(self) -> None:
        """Unload models that have exceeded their TTL."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single classification model variant."""

    name: str
    filename: str
    labels_filename: str
    io: ModelIOSpec
    output_mode: OutputMode


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenet_v1_224_quant": ModelSpec(
        name="mobilenet_v1_224_quant",
        filename="mobilenet_v1_1.0_224_quant.onnx",
        labels_filename="labels.txt",
        io=ModelIOSpec(width=224, height=224, encoding=TensorEncoding.QUANTIZED_BYTE),
        output_mode=OutputMode.TOP_K,
    ),
    "mobilenet_v1_224": ModelSpec(
        name="mobilenet_v1_224",
        filename="mobilenet_v1_1.0_224.onnx",
        labels_filename="labels.txt",
        io=ModelIOSpec(width=224, height=224, encoding=TensorEncoding.NORMALIZED_FLOAT32),
        output_mode=OutputMode.TOP_K,
    ),
    "magritte": ModelSpec(
        name="magritte",
        filename="magritte.onnx",
        labels_filename="magritte_labels.txt",
        io=ModelIOSpec(width=224, height=224, encoding=TensorEncoding.NORMALIZED_FLOAT32),
        output_mode=OutputMode.TOP_1,
    ),
}


def get_spec(model_name: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedSession:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Locates, loads, caches, and evicts ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)
        self._labels_dir = Path(settings.resolved_labels_dir)

        self._lock = threading.Lock()
        self._sessions: dict[str, _CachedSession] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local model file, downloading it if a repo is configured."""
        spec = get_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        path = self._ensure_file(self._models_dir, spec.filename)
        self._model_paths[model_name] = path
        return path

    def ensure_labels(self, model_name: str) -> Path:
        """Return the local label file, downloading it if a repo is configured."""
        spec = get_spec(model_name)
        return self._ensure_file(self._labels_dir, spec.labels_filename)

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                cached.last_used = time.monotonic()
                return cached.session

        model_path = self.ensure_downloaded(model_name)
        session = self._load_session(model_path)

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                existing.last_used = time.monotonic()
                return existing.session
            self._sessions[model_name] = _CachedSession(
                session=session,
                last_used=time.monotonic(),
            )
            logger.info("Loaded session for %s", model_name)
            return session

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def unload_idle_models(self) -> None:
        """Remove sessions that have exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [name for name, cached in self._sessions.items() if (now - cached.last_used) > ttl]
            for name in expired:
                del self._sessions[name]
                logger.info("Evicted idle session for %s", name)

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _ensure_file(self, directory: Path, filename: str) -> Path:
        local = directory / filename
        if local.exists():
            return local

        repo_id = self._settings.model_repo
        if repo_id is None:
            raise ConfigurationError(f"{local} does not exist and LABELKIT_MODEL_REPO is not set")

        downloaded = Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=filename,
                local_dir=str(directory),
            )
        )
        logger.info("Downloaded %s to %s", filename, downloaded)
        return downloaded

    def _load_session(self, model_path: Path) -> InferenceSession:
        try:
            return InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except SESSION_LOAD_ERRORS as exc:
            raise ConfigurationError(f"Failed to load model {model_path}: {exc}") from exc

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        if self._settings.device != "cuda":
            return [CPU_PROVIDER]
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": self._settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), CPU_PROVIDER]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        return opts
