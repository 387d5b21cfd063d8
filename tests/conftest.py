"""Shared fixtures: settings, worker pool, fake model, and in-memory images."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import pytest
from PIL import Image

from photolabel.config import Settings
from photolabel.errors import ModelLoadError
from photolabel.ml.image_classifier import Prediction
from photolabel.ml.inference import InferencePool

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    import numpy as np
    from numpy.typing import NDArray

    from photolabel.ml.model_manager import ModelConfig


def make_settings(models_dir: str, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": models_dir,
        "models_repo": "photolabel/mobilenet-onnx",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 1,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def image_bytes(fmt: str = "PNG", size: tuple[int, int] = (64, 48), color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


def mpo_bytes(
    size: tuple[int, int] = (320, 240),
    color: tuple[int, int, int] = (200, 30, 30),
    second_color: tuple[int, int, int] = (30, 30, 200),
) -> bytes:
    """Two-frame MPO, the container phone cameras write for JPEG captures."""
    buf = io.BytesIO()
    first = Image.new("RGB", size, color)
    first.save(buf, format="MPO", save_all=True, append_images=[Image.new("RGB", size, second_color)])
    return buf.getvalue()


class FakeClassifier:
    """Stands in for a loaded model; records every call."""

    model_name = "fake_mobilenet"

    def __init__(self) -> None:
        self.predictions: list[Prediction] = [
            Prediction(label="cat", probability=0.87),
            Prediction(label="dog", probability=0.08),
            Prediction(label="fox", probability=0.02),
        ]
        self.error: Exception | None = None
        self.calls: list[tuple[tuple[int, ...], int]] = []

    def classify(self, image: NDArray[np.float32], top_k: int) -> list[Prediction]:
        self.calls.append((tuple(image.shape), top_k))
        if self.error is not None:
            raise self.error
        return list(self.predictions)


class FakeLoader:
    """Loader that hands out a FakeClassifier, optionally failing first."""

    def __init__(self, classifier: FakeClassifier) -> None:
        self.classifier = classifier
        self.failures: list[Exception] = []
        self.load_calls = 0
        self.shutdown_calls = 0
        self._loaded = False

    def load(self, config: ModelConfig) -> FakeClassifier:
        self.load_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self._loaded = True
        return self.classifier

    def get_loaded_models(self) -> list[str]:
        return [self.classifier.model_name] if self._loaded else []

    def shutdown(self) -> None:
        self.shutdown_calls += 1
        self._loaded = False


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(str(tmp_path / "models"))


@pytest.fixture()
def pool(settings: Settings) -> Iterator[InferencePool]:
    inference_pool = InferencePool(settings)
    yield inference_pool
    inference_pool.shutdown()


@pytest.fixture()
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture()
def loader(classifier: FakeClassifier) -> FakeLoader:
    return FakeLoader(classifier)


@pytest.fixture()
def png_bytes() -> bytes:
    return image_bytes("PNG")


@pytest.fixture()
def jpeg_bytes() -> bytes:
    return image_bytes("JPEG", size=(320, 240))


@pytest.fixture()
def camera_jpeg_bytes() -> bytes:
    return mpo_bytes()


@pytest.fixture()
def load_failure() -> ModelLoadError:
    return ModelLoadError("asset download failed")
