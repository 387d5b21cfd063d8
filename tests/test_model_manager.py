"""Tests for the ONNX model manager and the model lifecycle."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest

from photolabel.config import Settings
from photolabel.errors import ModelLoadError, ModelNotReadyError
from photolabel.ml.model_manager import (
    MODEL_REGISTRY,
    LifecycleState,
    ModelConfig,
    ModelLifecycle,
    OnnxModelManager,
)

if TYPE_CHECKING:
    from conftest import FakeClassifier, FakeLoader

    from photolabel.ml.inference import InferencePool


def _settings(models_dir: Path, **overrides: object) -> Settings:
    return Settings(models_dir=str(models_dir), **overrides)  # type: ignore[arg-type]


def _fake_hub(tmp_path: Path, labels: str = "tabby cat\ngolden retriever\nred fox\n") -> MagicMock:
    """hf_hub_download stand-in that materialises files under tmp_path."""

    def download(repo_id: str, filename: str, local_dir: str, **_: object) -> str:
        path = Path(local_dir) / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(labels if filename.endswith(".txt") else "onnx", encoding="utf-8")
        return str(path)

    return MagicMock(side_effect=download)


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_default_config_is_mobilenet_v2_full_width(self) -> None:
        config = ModelConfig()
        assert config.model_name == "mobilenet_v2_1.0"
        assert config.model_name in MODEL_REGISTRY

    def test_known_variants(self) -> None:
        spec = MODEL_REGISTRY["mobilenet_v1_0.25"]
        assert spec.version == 1
        assert spec.width_multiplier == 0.25
        assert spec.input_size == 224
        assert spec.filename == "mobilenet_v1_0.25_224.onnx"

    def test_registry_has_seven_models(self) -> None:
        assert len(MODEL_REGISTRY) == 7

    def test_v2_quarter_width_unsupported(self) -> None:
        with pytest.raises(ModelLoadError, match="Unsupported MobileNet variant"):
            OnnxModelManager.get_spec(ModelConfig(version=2, width_multiplier=0.25))

    def test_config_from_settings(self, tmp_path: Path) -> None:
        settings = _settings(tmp_path, mobilenet_version=1, width_multiplier=0.5)
        assert ModelConfig.from_settings(settings) == ModelConfig(version=1, width_multiplier=0.5)


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("photolabel.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "mobilenet_v2_1.0_224.onnx")
        mgr = OnnxModelManager(_settings(tmp_path))

        path = mgr.ensure_downloaded("mobilenet_v2_1.0_224.onnx")

        mock_download.assert_called_once_with(
            repo_id="photolabel/mobilenet-onnx",
            filename="mobilenet_v2_1.0_224.onnx",
            local_dir=str(tmp_path),
        )
        assert path == tmp_path / "mobilenet_v2_1.0_224.onnx"

    @patch("photolabel.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "mobilenet_v2_1.0_224.onnx"
        model_file.touch()
        mgr = OnnxModelManager(_settings(tmp_path))
        # Simulate a previous download by setting the cached path.
        mgr._asset_paths["mobilenet_v2_1.0_224.onnx"] = model_file

        path = mgr.ensure_downloaded("mobilenet_v2_1.0_224.onnx")

        mock_download.assert_not_called()
        assert path == model_file

    @patch("photolabel.ml.model_manager.hf_hub_download")
    def test_download_failure_names_repo_setting(self, mock_download: MagicMock, tmp_path: Path) -> None:
        cause = OSError("404 Client Error: Repository Not Found")
        mock_download.side_effect = cause
        mgr = OnnxModelManager(_settings(tmp_path, models_repo="someone/missing-repo"))

        with pytest.raises(ModelLoadError, match="PHOTOLABEL_MODELS_REPO") as excinfo:
            mgr.load(ModelConfig())

        assert "someone/missing-repo" in str(excinfo.value)
        assert excinfo.value.__cause__ is cause
        assert mgr.get_loaded_models() == []

    @patch("photolabel.ml.model_manager.InferenceSession")
    def test_load_creates_and_caches(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_settings(tmp_path))
        with patch("photolabel.ml.model_manager.hf_hub_download", _fake_hub(tmp_path)) as mock_download:
            first = mgr.load(ModelConfig())
            second = mgr.load(ModelConfig())

        assert first is second
        assert first.model_name == "mobilenet_v2_1.0"
        assert first.labels == ["tabby cat", "golden retriever", "red fox"]
        mock_session_cls.assert_called_once()
        assert mock_session_cls.call_args.args[0] == str(tmp_path / "mobilenet_v2_1.0_224.onnx")
        assert mock_download.call_count == 2

    @patch("photolabel.ml.model_manager.InferenceSession")
    def test_load_with_empty_labels_fails(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_settings(tmp_path))
        with (
            patch("photolabel.ml.model_manager.hf_hub_download", _fake_hub(tmp_path, labels="\n\n")),
            pytest.raises(ModelLoadError, match="empty"),
        ):
            mgr.load(ModelConfig())
        mock_session_cls.assert_not_called()

    def test_load_rejects_input_size_mismatch(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_settings(tmp_path, input_size=192))
        with pytest.raises(ModelLoadError, match="224px"):
            mgr.load(ModelConfig())

    @patch("photolabel.ml.model_manager.InferenceSession")
    def test_get_loaded_models_and_shutdown(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_settings(tmp_path))
        assert mgr.get_loaded_models() == []

        with patch("photolabel.ml.model_manager.hf_hub_download", _fake_hub(tmp_path)):
            mgr.load(ModelConfig(version=1, width_multiplier=0.75))
        assert mgr.get_loaded_models() == ["mobilenet_v1_0.75"]

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_provider_building_cpu(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_settings(tmp_path, device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_settings(tmp_path, device="cuda"))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_settings(tmp_path, device="openvino"))
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"


# ---------------------------------------------------------------------------
# ModelLifecycle tests
# ---------------------------------------------------------------------------


class TestModelLifecycle:
    async def test_initialize_loads_once(self, loader: FakeLoader, pool: InferencePool) -> None:
        lifecycle = ModelLifecycle(loader, ModelConfig(), pool)
        assert lifecycle.state is LifecycleState.NOT_INITIALIZED

        first = await lifecycle.initialize()
        second = await lifecycle.initialize()

        assert first is second is loader.classifier
        assert loader.load_calls == 1
        assert lifecycle.is_ready
        assert lifecycle.handle is loader.classifier

    async def test_concurrent_initialize_shares_one_load(self, loader: FakeLoader, pool: InferencePool) -> None:
        lifecycle = ModelLifecycle(loader, ModelConfig(), pool)

        handles = await asyncio.gather(*(lifecycle.initialize() for _ in range(3)))

        assert all(h is loader.classifier for h in handles)
        assert loader.load_calls == 1

    async def test_state_transitions_reported(self, loader: FakeLoader, pool: InferencePool) -> None:
        lifecycle = ModelLifecycle(loader, ModelConfig(), pool)
        seen: list[LifecycleState] = []
        lifecycle.add_listener(seen.append)

        await lifecycle.initialize()

        assert seen == [LifecycleState.LOADING, LifecycleState.READY]

    async def test_failed_load_can_be_retried(
        self, loader: FakeLoader, pool: InferencePool, load_failure: ModelLoadError
    ) -> None:
        loader.failures.append(load_failure)
        lifecycle = ModelLifecycle(loader, ModelConfig(), pool)

        with pytest.raises(ModelLoadError):
            await lifecycle.initialize()
        assert lifecycle.state is LifecycleState.ERROR
        assert lifecycle.error is load_failure
        assert not lifecycle.is_ready

        await lifecycle.initialize()
        assert lifecycle.is_ready
        assert lifecycle.error is None
        assert loader.load_calls == 2

    async def test_unexpected_errors_become_model_load_errors(self, loader: FakeLoader, pool: InferencePool) -> None:
        cause = OSError("disk full")
        loader.failures.append(cause)
        lifecycle = ModelLifecycle(loader, ModelConfig(), pool)

        with pytest.raises(ModelLoadError, match="disk full") as excinfo:
            await lifecycle.initialize()

        assert excinfo.value.__cause__ is cause
        assert lifecycle.error is excinfo.value

    async def test_handle_before_ready_raises(self, loader: FakeLoader, pool: InferencePool) -> None:
        lifecycle = ModelLifecycle(loader, ModelConfig(), pool)
        with pytest.raises(ModelNotReadyError):
            _ = lifecycle.handle

    async def test_teardown_releases_handle(
        self, loader: FakeLoader, classifier: FakeClassifier, pool: InferencePool
    ) -> None:
        lifecycle = ModelLifecycle(loader, ModelConfig(), pool)
        await lifecycle.initialize()
        assert lifecycle.loaded_models() == [classifier.model_name]

        lifecycle.teardown()

        assert lifecycle.state is LifecycleState.NOT_INITIALIZED
        assert loader.shutdown_calls == 1
        assert lifecycle.loaded_models() == []
        with pytest.raises(ModelNotReadyError):
            _ = lifecycle.handle

    async def test_teardown_during_load_cancels_it(self, loader: FakeLoader, pool: InferencePool) -> None:
        gate = threading.Event()
        original = loader.load

        def slow_load(config: ModelConfig) -> FakeClassifier:
            gate.wait(timeout=5)
            return original(config)

        loader.load = slow_load  # type: ignore[method-assign]
        lifecycle = ModelLifecycle(loader, ModelConfig(), pool)
        seen: list[LifecycleState] = []
        lifecycle.add_listener(seen.append)

        waiting = asyncio.create_task(lifecycle.initialize())
        await asyncio.sleep(0)
        assert lifecycle.state is LifecycleState.LOADING

        lifecycle.teardown()
        gate.set()
        with pytest.raises(asyncio.CancelledError):
            await waiting
        # The worker is single-threaded, so this runs after the abandoned load returns.
        await pool.run(int)
        await asyncio.sleep(0)

        assert loader.load_calls == 1
        assert lifecycle.state is LifecycleState.NOT_INITIALIZED
        assert not lifecycle.is_ready
        assert seen == [LifecycleState.LOADING, LifecycleState.NOT_INITIALIZED]
        with pytest.raises(ModelNotReadyError):
            _ = lifecycle.handle
