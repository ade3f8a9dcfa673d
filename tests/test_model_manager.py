"""Tests for the Hugging Face model manager."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeSession, fake_hub_download
from waifutag.config import Settings
from waifutag.ml.backend import Device
from waifutag.ml.errors import ModelLoadError
from waifutag.ml.model_manager import HubModelManager, ModelFiles
from waifutag.ml.pipeline import PipelineState

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(tmp_path: Path, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": str(tmp_path / "models"),
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# HubModelManager tests
# ---------------------------------------------------------------------------


class TestHubModelManager:
    @patch("waifutag.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_fetches_model_and_labels(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.side_effect = fake_hub_download
        mgr = HubModelManager(_make_settings(tmp_path))

        files = mgr.ensure_downloaded("vit-large")

        local_dir = str(tmp_path / "models" / "vit-large")
        assert mock_download.call_count == 2
        mock_download.assert_any_call(
            repo_id="SmilingWolf/wd-vit-large-tagger-v3",
            filename="model.onnx",
            local_dir=local_dir,
        )
        mock_download.assert_any_call(
            repo_id="SmilingWolf/wd-vit-large-tagger-v3",
            filename="selected_tags.csv",
            local_dir=local_dir,
        )
        assert files == ModelFiles(
            model_path=Path(local_dir) / "model.onnx",
            labels_path=Path(local_dir) / "selected_tags.csv",
        )

    @patch("waifutag.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "model.onnx"
        labels_file = tmp_path / "selected_tags.csv"
        model_file.touch()
        labels_file.touch()

        mgr = HubModelManager(_make_settings(tmp_path))
        # Simulate a previous download by setting the cached paths.
        mgr._files["vit"] = ModelFiles(model_path=model_file, labels_path=labels_file)

        files = mgr.ensure_downloaded("vit")

        mock_download.assert_not_called()
        assert files.model_path == model_file

    @patch("waifutag.ml.model_manager.hf_hub_download", side_effect=OSError("network unreachable"))
    def test_download_failure_is_model_load_error(self, _mock_download: MagicMock, tmp_path: Path) -> None:
        mgr = HubModelManager(_make_settings(tmp_path))
        with pytest.raises(ModelLoadError, match="network unreachable"):
            mgr.ensure_downloaded("vit")

    def test_unknown_model_raises_keyerror(self, tmp_path: Path) -> None:
        mgr = HubModelManager(_make_settings(tmp_path))
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")

    @patch("waifutag.ml.backend.InferenceSession")
    @patch("waifutag.ml.model_manager.hf_hub_download")
    def test_get_pipeline_creates_and_caches(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.side_effect = fake_hub_download
        mock_session_cls.return_value = FakeSession()
        mgr = HubModelManager(_make_settings(tmp_path))

        pipeline1 = mgr.get_pipeline("swin-v2")
        pipeline2 = mgr.get_pipeline("swin-v2")

        assert pipeline1 is pipeline2
        assert pipeline1.state is PipelineState.READY
        mock_session_cls.assert_called_once()

    @patch("waifutag.ml.backend.InferenceSession")
    @patch("waifutag.ml.model_manager.hf_hub_download")
    def test_get_loaded_models(self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        mock_download.side_effect = fake_hub_download
        mock_session_cls.return_value = FakeSession()
        mgr = HubModelManager(_make_settings(tmp_path))

        assert mgr.get_loaded_models() == []
        mgr.get_pipeline("vit")
        assert mgr.get_loaded_models() == ["vit"]

    @patch("waifutag.ml.backend.InferenceSession", side_effect=RuntimeError("bad graph"))
    @patch("waifutag.ml.model_manager.hf_hub_download")
    def test_failed_load_is_not_cached(
        self, mock_download: MagicMock, _mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.side_effect = fake_hub_download
        mgr = HubModelManager(_make_settings(tmp_path))

        with pytest.raises(ModelLoadError):
            mgr.get_pipeline("vit")
        assert mgr.get_loaded_models() == []

    @patch("waifutag.ml.backend.InferenceSession")
    @patch("waifutag.ml.model_manager.hf_hub_download")
    def test_shutdown_closes_pipelines(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.side_effect = fake_hub_download
        mock_session_cls.return_value = FakeSession()
        mgr = HubModelManager(_make_settings(tmp_path))
        pipeline = mgr.get_pipeline("vit")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()

        assert mgr.get_loaded_models() == []
        assert pipeline.state is PipelineState.CLOSED

    def test_device_from_settings(self, tmp_path: Path) -> None:
        mgr = HubModelManager(_make_settings(tmp_path, device="cuda", device_id=1))
        assert mgr.device.device is Device.CUDA
        assert mgr.device.device_id == 1


class TestCustomRepositories:
    def test_rejected_unless_allowed(self, tmp_path: Path) -> None:
        mgr = HubModelManager(_make_settings(tmp_path))
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.resolve("me/custom-tagger")

    def test_malformed_repo_id_rejected(self, tmp_path: Path) -> None:
        mgr = HubModelManager(_make_settings(tmp_path, allow_custom_models=True))
        with pytest.raises(KeyError):
            mgr.resolve("../..")

    @patch("waifutag.ml.model_manager.hf_hub_download")
    def test_downloads_config_alongside_model(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.side_effect = fake_hub_download
        mgr = HubModelManager(_make_settings(tmp_path, allow_custom_models=True))

        files = mgr.ensure_downloaded("me/custom-tagger")

        local_dir = str(tmp_path / "models" / "custom" / "me--custom-tagger")
        assert mock_download.call_count == 3
        mock_download.assert_any_call(repo_id="me/custom-tagger", filename="config.json", local_dir=local_dir)
        assert files.config_path == Path(local_dir) / "config.json"

    @patch("waifutag.ml.backend.InferenceSession")
    @patch("waifutag.ml.model_manager.hf_hub_download")
    def test_pipeline_sized_from_config(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.side_effect = fake_hub_download
        mock_session_cls.return_value = FakeSession()
        mgr = HubModelManager(_make_settings(tmp_path, allow_custom_models=True))

        pipeline = mgr.get_pipeline("me/custom-tagger")

        assert pipeline.state is PipelineState.READY
        assert pipeline.variant is None
        assert pipeline.config.repo_id == "me/custom-tagger"
        assert pipeline.config.input_size == 448
        assert mgr.get_loaded_models() == ["me/custom-tagger"]
        assert mgr.get_pipeline("me/custom-tagger") is pipeline

    @patch("waifutag.ml.backend.InferenceSession")
    @patch("waifutag.ml.model_manager.hf_hub_download")
    def test_invalid_config_is_model_load_error(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        def download_with_bad_config(repo_id: str, filename: str, local_dir: str) -> str:
            path = Path(fake_hub_download(repo_id, filename, local_dir))
            if filename == "config.json":
                path.write_text('{"architecture": "vit"}', encoding="utf-8")
            return str(path)

        mock_download.side_effect = download_with_bad_config
        mgr = HubModelManager(_make_settings(tmp_path, allow_custom_models=True))

        with pytest.raises(ModelLoadError, match="invalid model config"):
            mgr.get_pipeline("me/custom-tagger")
        mock_session_cls.assert_not_called()
        assert mgr.get_loaded_models() == []
