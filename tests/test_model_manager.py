"""Tests for the ONNX model manager and the shared classifier handle."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from imagepredictor.config import Settings
from imagepredictor.errors import ClassifierLoadError
from imagepredictor.ml.model_manager import (
    MODEL_REGISTRY,
    ClassifierState,
    OnnxModelManager,
    SharedClassifier,
    check_model_source,
    read_labels,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "classifier_model": "mobilenetv2_100",
        "model_repo": "acme/classifier-models",
        "models_dir": "/tmp/imagepredictor_test_models",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _mock_session(input_name: str = "input") -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name=input_name, shape=[1, 3, 224, 224])]
    return session


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["mobilenetv2_100"]
        assert spec.name == "mobilenetv2_100"
        assert spec.input_size == (224, 224)
        assert spec.labels_filename == "imagenet_labels.txt"

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError):
            MODEL_REGISTRY["nonexistent_model"]

    def test_registry_names_match_keys(self) -> None:
        assert all(name == spec.name for name, spec in MODEL_REGISTRY.items())

    def test_vit_uses_its_own_normalization(self) -> None:
        assert MODEL_REGISTRY["vit_base_patch16_224"].mean == (0.5, 0.5, 0.5)
        assert MODEL_REGISTRY["resnet50"].mean == (0.485, 0.456, 0.406)


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("imagepredictor.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock) -> None:
        mock_download.return_value = "/tmp/imagepredictor_test_models/resnet50.onnx"
        mgr = OnnxModelManager(_make_settings())

        path = mgr.ensure_downloaded("resnet50")

        mock_download.assert_called_once_with(
            repo_id="acme/classifier-models",
            filename="resnet50.onnx",
            local_dir="/tmp/imagepredictor_test_models",
        )
        assert path == Path("/tmp/imagepredictor_test_models/resnet50.onnx")

    @patch("imagepredictor.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "resnet50.onnx"
        model_file.touch()

        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["resnet50"] = model_file

        path = mgr.ensure_downloaded("resnet50")

        mock_download.assert_not_called()
        assert path == model_file

    @patch("imagepredictor.ml.model_manager.hf_hub_download")
    def test_local_model_path_bypasses_download(self, mock_download: MagicMock, tmp_path: Path) -> None:
        local = tmp_path / "custom.onnx"
        mgr = OnnxModelManager(_make_settings(model_path=str(local)))

        assert mgr.ensure_downloaded("mobilenetv2_100") == local
        mock_download.assert_not_called()

    @patch("imagepredictor.ml.model_manager.hf_hub_download")
    def test_local_model_path_only_applies_to_configured_model(self, mock_download: MagicMock) -> None:
        mock_download.return_value = "/tmp/imagepredictor_test_models/resnet50.onnx"
        mgr = OnnxModelManager(_make_settings(model_path="/models/custom.onnx"))

        mgr.ensure_downloaded("resnet50")

        mock_download.assert_called_once()

    @patch("imagepredictor.ml.model_manager.InferenceSession")
    @patch("imagepredictor.ml.model_manager.hf_hub_download")
    def test_get_session_creates_and_caches(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/imagepredictor_test_models/mobilenetv2_100.onnx"
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session

        mgr = OnnxModelManager(_make_settings())

        session1 = mgr.get_session("mobilenetv2_100")
        session2 = mgr.get_session("mobilenetv2_100")

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()

    @patch("imagepredictor.ml.model_manager.InferenceSession")
    def test_load_classifier_builds_handle(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        labels_file = tmp_path / "labels.txt"
        labels_file.write_text("tabby cat\n\ngolden retriever\nlaptop\n", encoding="utf-8")
        mock_session_cls.return_value = _mock_session("pixel_values")

        mgr = OnnxModelManager(
            _make_settings(model_path=str(tmp_path / "model.onnx"), labels_path=str(labels_file))
        )
        handle = mgr.load_classifier("mobilenetv2_100")

        assert handle.model_name == "mobilenetv2_100"
        assert handle.input_name == "pixel_values"
        assert handle.input_size == (224, 224)
        assert handle.labels == ("tabby cat", "golden retriever", "laptop")
        assert handle.apply_softmax is True
        assert mgr.get_loaded_models() == ["mobilenetv2_100"]

    @patch("imagepredictor.ml.model_manager.InferenceSession")
    def test_load_classifier_rejects_empty_labels(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        labels_file = tmp_path / "labels.txt"
        labels_file.write_text("\n\n", encoding="utf-8")
        mock_session_cls.return_value = _mock_session()

        mgr = OnnxModelManager(
            _make_settings(model_path=str(tmp_path / "model.onnx"), labels_path=str(labels_file))
        )

        with pytest.raises(ValueError, match="empty"):
            mgr.load_classifier("mobilenetv2_100")

    @patch("imagepredictor.ml.model_manager.hf_hub_download")
    def test_load_classifier_downloads_labels(self, mock_download: MagicMock, tmp_path: Path) -> None:
        labels_file = tmp_path / "imagenet_labels.txt"
        labels_file.write_text("a\nb\n", encoding="utf-8")
        mock_download.side_effect = lambda repo_id, filename, local_dir: str(tmp_path / filename)

        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        with patch("imagepredictor.ml.model_manager.InferenceSession", return_value=_mock_session()):
            handle = mgr.load_classifier("mobilenetv2_100")

        assert handle.labels == ("a", "b")
        filenames = [c.kwargs["filename"] for c in mock_download.call_args_list]
        assert filenames == ["mobilenetv2_100.onnx", "imagenet_labels.txt"]

    def test_provider_building_cpu(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cuda"))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="openvino"))
        assert len(mgr._providers) == 2
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    @patch("imagepredictor.ml.model_manager.InferenceSession")
    @patch("imagepredictor.ml.model_manager.hf_hub_download")
    def test_shutdown_clears_sessions(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/imagepredictor_test_models/mobilenetv2_100.onnx"
        mgr = OnnxModelManager(_make_settings())
        mgr.get_session("mobilenetv2_100")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_keyerror(self) -> None:
        mgr = OnnxModelManager(_make_settings())
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")

    @patch("imagepredictor.ml.model_manager.hf_hub_download")
    def test_download_without_repo_raises(self, mock_download: MagicMock) -> None:
        mgr = OnnxModelManager(_make_settings(model_repo=None))

        with pytest.raises(RuntimeError, match="IMAGEPREDICTOR_MODEL_REPO"):
            mgr.ensure_downloaded("resnet50")
        mock_download.assert_not_called()

    def test_read_labels_strips_whitespace(self, tmp_path: Path) -> None:
        labels_file = tmp_path / "labels.txt"
        labels_file.write_text("  cat \r\ndog\n\n", encoding="utf-8")
        assert read_labels(labels_file) == ("cat", "dog")


# ---------------------------------------------------------------------------
# Startup model source check
# ---------------------------------------------------------------------------


class TestCheckModelSource:
    def test_repo_is_enough(self) -> None:
        check_model_source(_make_settings())

    def test_local_paths_are_enough(self) -> None:
        check_model_source(
            _make_settings(model_repo=None, model_path="/models/m.onnx", labels_path="/models/labels.txt")
        )

    def test_model_path_alone_is_rejected(self) -> None:
        with pytest.raises(RuntimeError, match="IMAGEPREDICTOR_LABELS_PATH"):
            check_model_source(_make_settings(model_repo=None, model_path="/models/m.onnx"))

    def test_no_source_is_rejected(self) -> None:
        with pytest.raises(RuntimeError, match="No model source configured"):
            check_model_source(_make_settings(model_repo=None))

    def test_unknown_model_is_rejected(self) -> None:
        with pytest.raises(RuntimeError, match="Unknown classifier model 'squeezenet'"):
            check_model_source(_make_settings(classifier_model="squeezenet"))


# ---------------------------------------------------------------------------
# SharedClassifier tests
# ---------------------------------------------------------------------------


class TestSharedClassifier:
    def test_loads_lazily(self) -> None:
        loader = MagicMock()
        shared = SharedClassifier(loader)

        assert shared.state == ClassifierState.UNLOADED
        loader.assert_not_called()

    def test_returns_the_same_handle(self) -> None:
        handle = MagicMock()
        loader = MagicMock(return_value=handle)
        shared = SharedClassifier(loader)

        assert shared.get() is handle
        assert shared.get() is handle
        loader.assert_called_once()
        assert shared.state == ClassifierState.READY

    def test_failure_is_terminal(self) -> None:
        loader = MagicMock(side_effect=RuntimeError("corrupt model"))
        shared = SharedClassifier(loader)

        with pytest.raises(ClassifierLoadError, match="corrupt model"):
            shared.get()
        with pytest.raises(ClassifierLoadError, match="corrupt model"):
            shared.get()

        loader.assert_called_once()
        assert shared.state == ClassifierState.FAILED

    def test_concurrent_first_use_loads_once(self) -> None:
        handle = MagicMock()
        calls: list[int] = []

        def slow_loader() -> MagicMock:
            calls.append(1)
            time.sleep(0.05)
            return handle

        shared = SharedClassifier(slow_loader)
        barrier = threading.Barrier(8)
        results: list[object] = []

        def worker() -> None:
            barrier.wait()
            results.append(shared.get())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert all(r is handle for r in results)

    @patch("imagepredictor.ml.model_manager.InferenceSession")
    def test_from_manager_uses_configured_model(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        labels_file = tmp_path / "labels.txt"
        labels_file.write_text("x\n", encoding="utf-8")
        mock_session_cls.return_value = _mock_session()
        settings = _make_settings(
            classifier_model="resnet50",
            model_path=str(tmp_path / "r50.onnx"),
            labels_path=str(labels_file),
        )

        shared = SharedClassifier.from_manager(OnnxModelManager(settings), settings.classifier_model)

        assert shared.get().model_name == "resnet50"
