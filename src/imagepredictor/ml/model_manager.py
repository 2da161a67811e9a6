"""Model manager: download, load and cache ONNX image classifiers.

Handles downloading models and label files from HuggingFace, creating and
caching ONNX InferenceSessions, and building the process-wide classifier
handle that every prediction shares.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from imagepredictor.errors import ClassifierLoadError

if TYPE_CHECKING:
    from collections.abc import Callable

    from imagepredictor.config import Settings

logger = logging.getLogger(__name__)

IMAGENET_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
IMAGENET_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)

MODEL_SOURCE_HINT = (
    "set IMAGEPREDICTOR_MODEL_REPO to a HuggingFace repo with the model and labels files, "
    "or set both IMAGEPREDICTOR_MODEL_PATH and IMAGEPREDICTOR_LABELS_PATH"
)


# ---------------------------------------------------------------------------
# Protocol (what SharedClassifier.from_manager needs from a manager)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is downloaded and return its file path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def load_classifier(self, model_name: str) -> ClassifierHandle:
        """Build a ready-to-run classifier handle."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX image classifier."""

    name: str
    filename: str
    labels_filename: str
    input_size: tuple[int, int]
    license: str
    mean: tuple[float, float, float] = IMAGENET_MEAN
    std: tuple[float, float, float] = IMAGENET_STD
    apply_softmax: bool = True


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenetv2_100": ModelSpec(
        name="mobilenetv2_100",
        filename="mobilenetv2_100.onnx",
        labels_filename="imagenet_labels.txt",
        input_size=(224, 224),
        license="Apache-2.0",
    ),
    "resnet50": ModelSpec(
        name="resnet50",
        filename="resnet50.onnx",
        labels_filename="imagenet_labels.txt",
        input_size=(224, 224),
        license="Apache-2.0",
    ),
    "efficientnet_b0": ModelSpec(
        name="efficientnet_b0",
        filename="efficientnet_b0.onnx",
        labels_filename="imagenet_labels.txt",
        input_size=(224, 224),
        license="Apache-2.0",
    ),
    "vit_base_patch16_224": ModelSpec(
        name="vit_base_patch16_224",
        filename="vit_base_patch16_224.onnx",
        labels_filename="imagenet_labels.txt",
        input_size=(224, 224),
        license="Apache-2.0",
        mean=(0.5, 0.5, 0.5),
        std=(0.5, 0.5, 0.5),
    ),
}


@dataclass(frozen=True)
class ClassifierHandle:
    """A loaded, ready-to-run image classifier.

    Read-only after construction; safe to share across engine workers.
    """

    model_name: str
    session: InferenceSession
    input_name: str
    input_size: tuple[int, int]
    labels: tuple[str, ...]
    mean: tuple[float, float, float]
    std: tuple[float, float, float]
    apply_softmax: bool


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads, loads and caches ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local model file, downloading it from HuggingFace if needed."""
        spec = self._get_spec(model_name)

        if model_name == self._settings.classifier_model and self._settings.model_path:
            return Path(self._settings.model_path)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        downloaded = self._download(spec.filename)
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def ensure_labels(self, model_name: str) -> Path:
        """Return the local labels file for a model, downloading it if needed."""
        spec = self._get_spec(model_name)
        if model_name == self._settings.classifier_model and self._settings.labels_path:
            return Path(self._settings.labels_path)
        return self._download(spec.labels_filename)

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def load_classifier(self, model_name: str) -> ClassifierHandle:
        """Build a classifier handle: session, labels and preprocessing constants."""
        spec = self._get_spec(model_name)
        session = self.get_session(model_name)
        labels = read_labels(self.ensure_labels(model_name))
        if not labels:
            raise ValueError(f"Labels file for '{model_name}' is empty")

        inputs = session.get_inputs()
        if not inputs:
            raise ValueError(f"Model '{model_name}' declares no inputs")

        return ClassifierHandle(
            model_name=model_name,
            session=session,
            input_name=inputs[0].name,
            input_size=spec.input_size,
            labels=labels,
            mean=spec.mean,
            std=spec.std,
            apply_softmax=spec.apply_softmax,
        )

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def _download(self, filename: str) -> Path:
        repo_id = self._settings.model_repo
        if not repo_id:
            raise RuntimeError(f"Cannot download '{filename}': {MODEL_SOURCE_HINT}")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        return Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=filename,
                local_dir=str(self._models_dir),
            )
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts


def check_model_source(settings: Settings) -> None:
    """Fail at startup unless the configured classifier can be located.

    Either IMAGEPREDICTOR_MODEL_REPO names a HuggingFace repo holding the
    registry's model and labels files, or both local paths are set.

    Raises:
        RuntimeError: If the model is unknown or no source is configured.
    """
    if settings.classifier_model not in MODEL_REGISTRY:
        known = ", ".join(sorted(MODEL_REGISTRY))
        raise RuntimeError(f"Unknown classifier model '{settings.classifier_model}' (known: {known})")
    if settings.model_repo:
        return
    if not (settings.model_path and settings.labels_path):
        raise RuntimeError(f"No model source configured: {MODEL_SOURCE_HINT}")


def read_labels(path: Path) -> tuple[str, ...]:
    """Read one label per line, skipping blank lines."""
    with path.open(encoding="utf-8") as fh:
        return tuple(line.strip() for line in fh if line.strip())


# ---------------------------------------------------------------------------
# Shared classifier handle
# ---------------------------------------------------------------------------


class ClassifierState(StrEnum):
    UNLOADED = "unloaded"
    READY = "ready"
    FAILED = "failed"


class SharedClassifier:
    """Lazily built classifier handle shared by every prediction.

    The loader runs at most once. If it fails, the failure is terminal: every
    later ``get()`` raises ``ClassifierLoadError`` without calling the loader
    again.
    """

    def __init__(self, loader: Callable[[], ClassifierHandle]) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._handle: ClassifierHandle | None = None
        self._failure: str | None = None

    @classmethod
    def from_manager(cls, manager: ModelManager, model_name: str) -> SharedClassifier:
        return cls(lambda: manager.load_classifier(model_name))

    @property
    def state(self) -> ClassifierState:
        # No lock: get() holds it for the whole load.
        if self._handle is not None:
            return ClassifierState.READY
        if self._failure is not None:
            return ClassifierState.FAILED
        return ClassifierState.UNLOADED

    def get(self) -> ClassifierHandle:
        """Return the handle, building it on first use."""
        handle = self._handle
        if handle is not None:
            return handle

        with self._lock:
            if self._handle is not None:
                return self._handle
            if self._failure is not None:
                raise ClassifierLoadError(self._failure)

            try:
                handle = self._loader()
            except Exception as exc:
                self._failure = f"Failed to create image classifier: {exc}"
                logger.exception("Failed to create image classifier")
                raise ClassifierLoadError(self._failure) from exc

            self._handle = handle
            logger.info("Image classifier ready (%s, %d labels)", handle.model_name, len(handle.labels))
            return handle
