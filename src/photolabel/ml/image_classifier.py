"""MobileNet image classifier backed by an ONNX Runtime session."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prediction:
    """A single classification prediction."""

    label: str
    probability: float


class ImageClassifier(Protocol):
    """Protocol for a loaded classification model."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.float32], top_k: int) -> list[Prediction]:
        """Classify an image and return the top-k predictions.

        Args:
            image: HxWx3 RGB array with values in [0, 255], already resized
                to the model input size.
            top_k: Number of predictions to return.

        Returns:
            Predictions sorted by probability (descending).
        """
        ...


def _softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - logits.max()
    exp = np.exp(shifted)
    return exp / exp.sum()


class OnnxImageClassifier:
    """Runs a MobileNet ONNX graph and maps its output to ImageNet labels.

    Inputs are scaled from [0, 255] to [-1, 1]. Both NHWC and NCHW graphs
    are supported; the layout is read from the session's input shape.
    Graphs with a leading background class (1001 outputs) have it dropped.
    """

    def __init__(self, name: str, session: InferenceSession, labels: list[str]) -> None:
        self._name = name
        self._session = session
        self._labels = labels

        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        self._channels_first = len(model_input.shape) == 4 and model_input.shape[1] == 3

    @property
    def model_name(self) -> str:
        return self._name

    @property
    def labels(self) -> list[str]:
        return self._labels

    def classify(self, image: NDArray[np.float32], top_k: int) -> list[Prediction]:
        batch = (image.astype(np.float32) / 127.5) - 1.0
        if self._channels_first:
            batch = np.transpose(batch, (2, 0, 1))
        batch = np.expand_dims(batch, axis=0)

        outputs = self._session.run(None, {self._input_name: batch})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)

        if scores.size == len(self._labels) + 1:
            scores = scores[1:]
        if scores.size != len(self._labels):
            raise ValueError(f"Model produced {scores.size} scores for {len(self._labels)} labels")

        if scores.min() < 0.0 or not np.isclose(scores.sum(), 1.0, atol=1e-3):
            scores = _softmax(scores)

        k = min(top_k, scores.size)
        top = np.argsort(scores)[::-1][:k]
        return [Prediction(label=self._labels[i], probability=float(scores[i])) for i in top]
