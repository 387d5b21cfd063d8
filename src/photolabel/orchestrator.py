"""Classification orchestrator.

Owns the model lifecycle and runs one capture at a time through
fetch -> decode -> resize -> infer -> format, releasing every intermediate
tensor on the way out. Results are published as state (``result``,
``error``, ``is_ready``, ``is_classifying``) to subscribers rather than
returned to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from photolabel import messages
from photolabel.errors import AppError, ErrorKind, ModelLoadError, error_kind
from photolabel.ml.model_manager import LifecycleState, ModelConfig, ModelLifecycle, OnnxModelManager
from photolabel.ml.preprocessing import ImagePreprocessor
from photolabel.ml.tensors import TensorScope

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from photolabel.config import Settings
    from photolabel.ml.image_classifier import ImageClassifier, Prediction
    from photolabel.ml.inference import InferencePool
    from photolabel.ml.preprocessing import ImageHandle

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 3
DEFAULT_CONFIDENCE_THRESHOLD = 0.1


class OrchestratorState(StrEnum):
    NOT_INITIALIZED = "not_initialized"
    LOADING = "loading"
    READY = "ready"
    CLASSIFYING = "classifying"
    ERROR = "error"


@dataclass(frozen=True)
class ClassificationState:
    """Snapshot of everything a capture client renders."""

    state: OrchestratorState
    is_ready: bool
    is_classifying: bool
    result: str
    error: AppError | None
    request_id: int


def format_prediction(predictions: Sequence[Prediction], confidence_threshold: float) -> str:
    """Render the top prediction as ``"<label> (<pct>%)"``.

    Predictions are expected in descending probability order. An empty list,
    or a top probability under the threshold, yields the no-prediction text.
    """
    if not predictions:
        return messages.NO_PREDICTION
    top = predictions[0]
    if top.probability < confidence_threshold:
        return messages.NO_PREDICTION
    return f"{top.label} ({top.probability * 100:.1f}%)"


class ClassificationOrchestrator:
    """Loads the model once and classifies one image at a time.

    ``classify_image`` is a no-op while the model is not ready and while
    another classification is in flight; both cases are logged and leave
    the published state untouched.
    """

    def __init__(
        self,
        lifecycle: ModelLifecycle,
        preprocessor: ImagePreprocessor,
        pool: InferencePool,
        *,
        top_k: int = DEFAULT_TOP_K,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        scope_factory: Callable[[], TensorScope] = TensorScope,
    ) -> None:
        self._lifecycle = lifecycle
        self._preprocessor = preprocessor
        self._pool = pool
        self._top_k = top_k
        self._confidence_threshold = confidence_threshold
        self._scope_factory = scope_factory

        self._classifying = False
        self._result = ""
        self._error: AppError | None = None
        self._request_id = 0
        self._subscribers: list[Callable[[ClassificationState], None]] = []

        lifecycle.add_listener(self._on_lifecycle_change)

    @classmethod
    def from_settings(cls, settings: Settings, pool: InferencePool) -> ClassificationOrchestrator:
        lifecycle = ModelLifecycle(OnnxModelManager(settings), ModelConfig.from_settings(settings), pool)
        return cls(
            lifecycle,
            ImagePreprocessor(settings),
            pool,
            top_k=settings.top_k,
            confidence_threshold=settings.confidence_threshold,
        )

    # -- Observable state ---------------------------------------------------

    @property
    def state(self) -> OrchestratorState:
        if self._classifying:
            return OrchestratorState.CLASSIFYING
        return OrchestratorState(self._lifecycle.state.value)

    @property
    def is_ready(self) -> bool:
        return self._lifecycle.is_ready

    @property
    def is_classifying(self) -> bool:
        return self._classifying

    @property
    def result(self) -> str:
        return self._result

    @property
    def error(self) -> AppError | None:
        return self._error

    @property
    def lifecycle(self) -> ModelLifecycle:
        return self._lifecycle

    def snapshot(self) -> ClassificationState:
        return ClassificationState(
            state=self.state,
            is_ready=self.is_ready,
            is_classifying=self._classifying,
            result=self._result,
            error=self._error,
            request_id=self._request_id,
        )

    def subscribe(self, callback: Callable[[ClassificationState], None]) -> Callable[[], None]:
        """Register ``callback`` for state changes. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # -- Lifecycle ----------------------------------------------------------

    async def initialize(self) -> None:
        """Load the model once. Failures are published as a ``model_load`` error."""
        try:
            await self._lifecycle.initialize()
        except ModelLoadError as exc:
            self._error = AppError(
                kind=error_kind(exc, ErrorKind.MODEL_LOAD),
                message=messages.MODEL_LOAD_FAILED,
                original_error=exc,
            )
            self._notify()
            return

        if self._error is not None and self._error.kind is ErrorKind.MODEL_LOAD:
            self._error = None
            self._notify()

    def teardown(self) -> None:
        self._lifecycle.teardown()

    # -- Classification -----------------------------------------------------

    async def classify_image(self, handle: ImageHandle) -> int | None:
        """Classify the image behind ``handle`` and publish the outcome.

        Returns:
            The request id of the accepted classification, or ``None`` when the
            call was skipped because the model is not ready or another
            classification is running.
        """
        if not self._lifecycle.is_ready:
            logger.warning("Model not loaded, skipping classification")
            return None
        if self._classifying:
            logger.warning("Classification %d still running, skipping new request", self._request_id)
            return None

        model = self._lifecycle.handle
        self._request_id += 1
        request_id = self._request_id
        self._classifying = True
        self._result = ""
        self._error = None
        self._notify()

        try:
            with self._scope_factory() as scope:
                self._result = await self._run_pipeline(model, handle, scope)
            logger.info("Classification %d: %s", request_id, self._result)
        except Exception as exc:
            logger.exception("Classification %d failed", request_id)
            self._result = messages.PREDICTION_ERROR
            self._error = AppError(
                kind=error_kind(exc, ErrorKind.CLASSIFICATION),
                message=messages.CLASSIFICATION_FAILED,
                original_error=exc,
            )
        finally:
            self._classifying = False
            self._notify()
        return request_id

    async def _run_pipeline(self, model: ImageClassifier, handle: ImageHandle, scope: TensorScope) -> str:
        logger.debug("Fetching image")
        image_bytes = await self._pool.run(self._preprocessor.fetch_bytes, handle)

        logger.debug("Decoding %d bytes", len(image_bytes))
        decoded = scope.track(await self._pool.run(self._preprocessor.decode_image, image_bytes), name="decoded")

        logger.debug("Resizing %s to %d", decoded.shape, self._preprocessor.input_size)
        resized = scope.track(await self._pool.run(self._preprocessor.resize, decoded.data), name="resized")

        logger.debug("Running prediction")
        predictions = await self._pool.run(model.classify, resized.data, self._top_k)
        logger.debug("Predictions: %s", predictions)

        return format_prediction(predictions, self._confidence_threshold)

    # -- Internal -----------------------------------------------------------

    def _on_lifecycle_change(self, state: LifecycleState) -> None:
        logger.debug("Model lifecycle -> %s", state)
        self._notify()

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("State subscriber %r failed", callback)
