"""Tests for the ONNX model manager."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from onnxruntime.capi.onnxruntime_pybind11_state import InvalidProtobuf
from pydantic import ValidationError

from labelkit.config import Settings
from labelkit.errors import ConfigurationError
from labelkit.ml.encoding import TensorEncoding
from labelkit.ml.model_manager import MODEL_REGISTRY, OnnxModelManager, get_spec
from labelkit.ml.ranking import OutputMode

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(models_dir: Path, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": models_dir,
        "model_repo": None,
        "model_ttl": 300,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _with_model_file(models_dir: Path, model_name: str) -> Path:
    path = models_dir / MODEL_REGISTRY[model_name].filename
    path.touch()
    return path


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = get_spec("magritte")
        assert spec.name == "magritte"
        assert spec.labels_filename == "magritte_labels.txt"
        assert spec.output_mode is OutputMode.TOP_1

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError, match="Unknown model"):
            get_spec("nonexistent_model")

    def test_encodings(self) -> None:
        assert MODEL_REGISTRY["mobilenet_v1_224_quant"].io.encoding is TensorEncoding.QUANTIZED_BYTE
        assert MODEL_REGISTRY["mobilenet_v1_224"].io.encoding is TensorEncoding.NORMALIZED_FLOAT32
        assert MODEL_REGISTRY["magritte"].io.encoding is TensorEncoding.NORMALIZED_FLOAT32

    def test_all_variants_take_224_rgb(self) -> None:
        for spec in MODEL_REGISTRY.values():
            assert spec.io.shape == (1, 224, 224, 3)


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("labelkit.ml.model_manager.hf_hub_download")
    def test_local_model_used_without_download(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = _with_model_file(tmp_path, "magritte")
        mgr = OnnxModelManager(_make_settings(tmp_path, model_repo="someone/models"))

        assert mgr.ensure_downloaded("magritte") == model_file
        mock_download.assert_not_called()

    def test_missing_model_without_repo(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        with pytest.raises(ConfigurationError, match="LABELKIT_MODEL_REPO"):
            mgr.ensure_downloaded("magritte")

    @patch("labelkit.ml.model_manager.hf_hub_download")
    def test_missing_model_downloaded_from_repo(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "magritte.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path, model_repo="someone/models"))

        path = mgr.ensure_downloaded("magritte")

        mock_download.assert_called_once_with(
            repo_id="someone/models",
            filename="magritte.onnx",
            local_dir=str(tmp_path),
        )
        assert path == tmp_path / "magritte.onnx"

    @patch("labelkit.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_cached_path(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "elsewhere.onnx"
        model_file.touch()
        mgr = OnnxModelManager(_make_settings(tmp_path, model_repo="someone/models"))
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["magritte"] = model_file

        assert mgr.ensure_downloaded("magritte") == model_file
        mock_download.assert_not_called()

    def test_labels_read_from_labels_dir(self, tmp_path: Path) -> None:
        labels_dir = tmp_path / "labels"
        labels_dir.mkdir()
        (labels_dir / "labels.txt").write_text("a\n", encoding="utf-8")
        mgr = OnnxModelManager(_make_settings(tmp_path / "models", labels_dir=labels_dir))

        assert mgr.ensure_labels("mobilenet_v1_224") == labels_dir / "labels.txt"

    def test_labels_default_to_models_dir(self, tmp_path: Path) -> None:
        (tmp_path / "magritte_labels.txt").write_text("apple\n", encoding="utf-8")
        mgr = OnnxModelManager(_make_settings(tmp_path))
        assert mgr.ensure_labels("magritte") == tmp_path / "magritte_labels.txt"

    def test_missing_labels_without_repo(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        with pytest.raises(ConfigurationError):
            mgr.ensure_labels("magritte")

    @patch("labelkit.ml.model_manager.InferenceSession")
    def test_get_session_creates_and_caches(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        _with_model_file(tmp_path, "mobilenet_v1_224")
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session
        mgr = OnnxModelManager(_make_settings(tmp_path))

        session1 = mgr.get_session("mobilenet_v1_224")
        session2 = mgr.get_session("mobilenet_v1_224")

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()

    @patch("labelkit.ml.model_manager.InferenceSession")
    def test_get_loaded_models(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        _with_model_file(tmp_path, "mobilenet_v1_224")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        assert mgr.get_loaded_models() == []
        mgr.get_session("mobilenet_v1_224")
        assert mgr.get_loaded_models() == ["mobilenet_v1_224"]

    @patch("labelkit.ml.model_manager.InferenceSession")
    def test_unload_idle_models_removes_expired(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        _with_model_file(tmp_path, "mobilenet_v1_224")
        mgr = OnnxModelManager(_make_settings(tmp_path, model_ttl=1))
        mgr.get_session("mobilenet_v1_224")

        # Fake the last_used time to be in the past.
        mgr._sessions["mobilenet_v1_224"].last_used = time.monotonic() - 10

        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

    @patch("labelkit.ml.model_manager.InferenceSession")
    def test_unload_idle_skipped_when_ttl_zero(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        _with_model_file(tmp_path, "magritte")
        mgr = OnnxModelManager(_make_settings(tmp_path, model_ttl=0))
        mgr.get_session("magritte")
        mgr._sessions["magritte"].last_used = time.monotonic() - 10_000

        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == ["magritte"]

    def test_provider_building_cpu(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="cuda"))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_unsupported_device_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError):
            _make_settings(tmp_path, device="openvino")

    @patch("labelkit.ml.model_manager.InferenceSession")
    def test_corrupt_model_raises_configuration_error(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        _with_model_file(tmp_path, "magritte")
        mock_session_cls.side_effect = InvalidProtobuf("not a model")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        with pytest.raises(ConfigurationError, match="Failed to load model"):
            mgr.get_session("magritte")
        assert mgr.get_loaded_models() == []

    @patch("labelkit.ml.model_manager.InferenceSession")
    def test_session_uses_configured_providers(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        model_file = _with_model_file(tmp_path, "magritte")
        mgr = OnnxModelManager(_make_settings(tmp_path))
        mgr.get_session("magritte")

        args, kwargs = mock_session_cls.call_args
        assert args == (str(model_file),)
        assert kwargs["providers"] == ["CPUExecutionProvider"]

    @patch("labelkit.ml.model_manager.InferenceSession")
    def test_shutdown_clears_sessions(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        _with_model_file(tmp_path, "magritte")
        mgr = OnnxModelManager(_make_settings(tmp_path))
        mgr.get_session("magritte")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_keyerror(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")
