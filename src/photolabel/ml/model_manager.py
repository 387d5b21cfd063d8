"""Model manager: download and load MobileNet ONNX models, and own their lifecycle.

``OnnxModelManager`` resolves a (version, width multiplier) pair against the
static registry, downloads the graph and label list from HuggingFace, and
builds an ONNX Runtime session. ``ModelLifecycle`` wraps one loaded model
behind a load-once, retry-on-failure state machine.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from photolabel.errors import ModelLoadError, ModelNotReadyError
from photolabel.ml.image_classifier import OnnxImageClassifier

if TYPE_CHECKING:
    from collections.abc import Callable

    from photolabel.config import Settings
    from photolabel.ml.image_classifier import ImageClassifier
    from photolabel.ml.inference import InferencePool

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelLoader(Protocol):
    """Protocol for loading a classification model."""

    def load(self, config: ModelConfig) -> ImageClassifier:
        """Load the model described by ``config`` and return its handle."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Release all loaded models."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelConfig:
    """Which MobileNet variant to load."""

    version: int = 2
    width_multiplier: float = 1.0

    @property
    def model_name(self) -> str:
        return f"mobilenet_v{self.version}_{self.width_multiplier}"

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelConfig:
        return cls(version=settings.mobilenet_version, width_multiplier=settings.width_multiplier)


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX model."""

    name: str
    version: int
    width_multiplier: float
    filename: str
    labels_filename: str
    input_size: int
    license: str


LABELS_FILENAME = "imagenet_labels.txt"


def _mobilenet(version: int, width_multiplier: float) -> ModelSpec:
    config = ModelConfig(version=version, width_multiplier=width_multiplier)
    return ModelSpec(
        name=config.model_name,
        version=version,
        width_multiplier=width_multiplier,
        filename=f"{config.model_name}_224.onnx",
        labels_filename=LABELS_FILENAME,
        input_size=224,
        license="Apache-2.0",
    )


MODEL_REGISTRY: dict[str, ModelSpec] = {
    spec.name: spec
    for spec in (
        _mobilenet(1, 0.25),
        _mobilenet(1, 0.5),
        _mobilenet(1, 0.75),
        _mobilenet(1, 1.0),
        _mobilenet(2, 0.5),
        _mobilenet(2, 0.75),
        _mobilenet(2, 1.0),
    )
}


# ---------------------------------------------------------------------------
# Concrete loader
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads MobileNet assets and creates cached ONNX classifiers."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._classifiers: dict[str, OnnxImageClassifier] = {}
        self._asset_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, filename: str) -> Path:
        """Download a model asset from HuggingFace if not already present locally.

        Raises:
            ModelLoadError: If the asset cannot be fetched from ``models_repo``.
        """
        if filename in self._asset_paths:
            path = self._asset_paths[filename]
            if path.exists():
                return path

        repo = self._settings.models_repo
        try:
            downloaded = Path(hf_hub_download(repo_id=repo, filename=filename, local_dir=str(self._models_dir)))
        except (HfHubHTTPError, OSError) as exc:
            raise ModelLoadError(
                f"Cannot download {filename} from {repo}; set PHOTOLABEL_MODELS_REPO to a repo "
                f"hosting the MobileNet ONNX assets: {exc}"
            ) from exc
        self._asset_paths[filename] = downloaded
        logger.info("Downloaded %s to %s", filename, downloaded)
        return downloaded

    def load(self, config: ModelConfig) -> OnnxImageClassifier:
        """Return a cached classifier for ``config``, creating one if needed.

        Raises:
            ModelLoadError: If the variant is unsupported or its assets are unusable.
        """
        spec = self.get_spec(config)
        with self._lock:
            cached = self._classifiers.get(spec.name)
            if cached is not None:
                return cached

        if spec.input_size != self._settings.input_size:
            raise ModelLoadError(
                f"Model '{spec.name}' expects {spec.input_size}px input, configured for {self._settings.input_size}px"
            )

        model_path = self.ensure_downloaded(spec.filename)
        labels = self._read_labels(self.ensure_downloaded(spec.labels_filename))
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        classifier = OnnxImageClassifier(spec.name, session, labels)

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._classifiers.get(spec.name)
            if existing is not None:
                return existing
            self._classifiers[spec.name] = classifier
            logger.info("Loaded session for %s (%d labels)", spec.name, len(labels))
            return classifier

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._classifiers.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._classifiers.clear()
            logger.info("All model sessions cleared")

    @staticmethod
    def get_spec(config: ModelConfig) -> ModelSpec:
        """Look up the registry entry for ``config``."""
        try:
            return MODEL_REGISTRY[config.model_name]
        except KeyError:
            raise ModelLoadError(
                f"Unsupported MobileNet variant: version={config.version}, "
                f"width_multiplier={config.width_multiplier}"
            ) from None

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _read_labels(path: Path) -> list[str]:
        labels = [line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
        if not labels:
            raise ModelLoadError(f"Label file {path} is empty")
        return labels

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


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class LifecycleState(StrEnum):
    NOT_INITIALIZED = "not_initialized"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class ModelLifecycle:
    """Owns the single model handle: load once, expose readiness, retry on failure.

    Concurrent ``initialize`` calls share one in-progress load. A failed load
    leaves the lifecycle in ``ERROR`` and the next ``initialize`` tries again.
    """

    def __init__(self, loader: ModelLoader, config: ModelConfig, pool: InferencePool) -> None:
        self._loader = loader
        self._config = config
        self._pool = pool

        self._state = LifecycleState.NOT_INITIALIZED
        self._handle: ImageClassifier | None = None
        self._error: ModelLoadError | None = None
        self._loading: asyncio.Task[ImageClassifier] | None = None
        self._listeners: list[Callable[[LifecycleState], None]] = []

    def add_listener(self, listener: Callable[[LifecycleState], None]) -> None:
        """Call ``listener`` with the new state on every transition."""
        self._listeners.append(listener)

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is LifecycleState.READY

    @property
    def error(self) -> ModelLoadError | None:
        return self._error

    @property
    def config(self) -> ModelConfig:
        return self._config

    @property
    def handle(self) -> ImageClassifier:
        if self._handle is None:
            raise ModelNotReadyError(f"Model {self._config.model_name} is not loaded (state={self._state})")
        return self._handle

    async def initialize(self) -> ImageClassifier:
        """Load the model if it is not loaded yet and return its handle.

        Raises:
            ModelLoadError: If loading fails. The lifecycle can be retried.
        """
        if self._handle is not None:
            return self._handle
        if self._loading is None:
            self._error = None
            self._set_state(LifecycleState.LOADING)
            self._loading = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._loading)

    def loaded_models(self) -> list[str]:
        return self._loader.get_loaded_models()

    def teardown(self) -> None:
        """Drop the model handle, cancel any load in flight, and release the loader's sessions.

        Callers still awaiting ``initialize`` get ``asyncio.CancelledError``.
        """
        if self._handle is not None:
            logger.info("Releasing model %s", self._handle.model_name)
        if self._loading is not None and not self._loading.done():
            logger.info("Cancelling load of %s", self._config.model_name)
            self._loading.cancel()
        self._handle = None
        self._loading = None
        self._loader.shutdown()
        self._set_state(LifecycleState.NOT_INITIALIZED)

    async def _load(self) -> ImageClassifier:
        logger.info("Loading model %s", self._config.model_name)
        try:
            handle = await self._pool.run(self._loader.load, self._config)
        except ModelLoadError as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            error = ModelLoadError(f"Failed to load {self._config.model_name}: {exc}")
            self._fail(error)
            raise error from exc

        self._handle = handle
        self._loading = None
        logger.info("Model %s ready", handle.model_name)
        self._set_state(LifecycleState.READY)
        return handle

    def _fail(self, error: ModelLoadError) -> None:
        logger.error("Model load failed: %s", error)
        self._error = error
        self._loading = None
        self._set_state(LifecycleState.ERROR)

    def _set_state(self, state: LifecycleState) -> None:
        self._state = state
        for listener in self._listeners:
            listener(state)
