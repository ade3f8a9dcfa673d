"""Model manager: download tagger artifacts and cache ready pipelines.

Resolves each variant's ``model.onnx`` / ``selected_tags.csv`` pair from the
Hugging Face Hub into ``models_dir`` and keeps one loaded ``TaggingPipeline``
per model for the lifetime of the service.

With ``allow_custom_models`` a model name may also be an ``owner/repo`` id.
Such a repository also ships a timm ``config.json`` that sizes the input.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError, LocalEntryNotFoundError

from waifutag.ml.backend import Device, DeviceSelector
from waifutag.ml.errors import ModelLoadError
from waifutag.ml.pipeline import TaggingPipeline
from waifutag.ml.variants import VARIANT_REGISTRY, ModelVariant, VariantConfig

if TYPE_CHECKING:
    from waifutag.config import Settings

logger = logging.getLogger(__name__)

_REPO_ID = re.compile(r"^\w[\w.-]*/\w[\w.-]*$")


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def resolve(self, model: ModelVariant | str) -> ModelVariant | str:
        """Map a model name to a registry variant or an accepted repo id."""
        ...

    def ensure_downloaded(self, model: ModelVariant | str) -> ModelFiles:
        """Ensure a model's files are present locally and return their paths."""
        ...

    def get_pipeline(self, model: ModelVariant | str) -> TaggingPipeline:
        """Return a cached or newly loaded pipeline."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Close all cached pipelines."""
        ...


@dataclass(frozen=True)
class ModelFiles:
    """Local paths of one model's matched model/label pair."""

    model_path: Path
    labels_path: Path
    config_path: Path | None = None

    def exist(self) -> bool:
        paths = [self.model_path, self.labels_path]
        if self.config_path is not None:
            paths.append(self.config_path)
        return all(path.exists() for path in paths)


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class HubModelManager:
    """Downloads models from the Hub and caches one pipeline per model."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)
        self._device = DeviceSelector(device=Device(settings.device), device_id=settings.device_id)

        self._lock = threading.Lock()
        # One load at a time; models are large and loads are rare.
        self._load_lock = threading.Lock()
        # Keyed by variant value or repo id; StrEnum members hash as their value.
        self._pipelines: dict[str, TaggingPipeline] = {}
        self._files: dict[str, ModelFiles] = {}

    @property
    def device(self) -> DeviceSelector:
        return self._device

    # -- Public API ---------------------------------------------------------

    def resolve(self, model: ModelVariant | str) -> ModelVariant | str:
        """Map ``model`` to a registry variant, or to a Hub repo id if allowed.

        Raises:
            KeyError: If the name is neither a known variant nor an accepted
                custom repository.
        """
        try:
            return ModelVariant(model)
        except ValueError:
            pass
        if self._settings.allow_custom_models and _REPO_ID.match(model):
            return model
        raise KeyError(f"Unknown model: {model}")

    def ensure_downloaded(self, model: ModelVariant | str) -> ModelFiles:
        """Download a model's files if not already present."""
        key = self.resolve(model)
        cached = self._files.get(key)
        if cached is not None and cached.exist():
            return cached

        if isinstance(key, ModelVariant):
            config = VARIANT_REGISTRY[key]
            repo_id = config.repo_id
            filenames = [config.model_filename, config.labels_filename]
            local_dir = self._models_dir / key.value
        else:
            repo_id = key
            filenames = [
                self._settings.custom_model_filename,
                self._settings.custom_labels_filename,
                self._settings.custom_config_filename,
            ]
            local_dir = self._models_dir / "custom" / key.replace("/", "--")

        try:
            paths = [
                Path(hf_hub_download(repo_id=repo_id, filename=filename, local_dir=str(local_dir)))
                for filename in filenames
            ]
        except (HfHubHTTPError, LocalEntryNotFoundError, OSError) as exc:
            raise ModelLoadError(local_dir, str(self._device), f"download from {repo_id} failed: {exc}") from exc

        files = ModelFiles(*paths)
        self._files[key] = files
        logger.info("Downloaded %s to %s", key, local_dir)
        return files

    def get_pipeline(self, model: ModelVariant | str) -> TaggingPipeline:
        """Return the ready pipeline for ``model``, loading it on first use."""
        key = self.resolve(model)
        with self._lock:
            cached = self._pipelines.get(key)
            if cached is not None:
                return cached

        with self._load_lock:
            # Another thread may have loaded it while we waited.
            with self._lock:
                cached = self._pipelines.get(key)
                if cached is not None:
                    return cached

            files = self.ensure_downloaded(key)
            variant = key if isinstance(key, ModelVariant) else self._custom_config(key, files)
            pipeline = TaggingPipeline(
                files.model_path,
                files.labels_path,
                variant,
                device=self._device,
                settings=self._settings,
            ).load()

            with self._lock:
                self._pipelines[key] = pipeline
            return pipeline

    def get_loaded_models(self) -> list[str]:
        """Return names of models with a ready pipeline."""
        with self._lock:
            return [str(key) for key in self._pipelines]

    def shutdown(self) -> None:
        """Close every cached pipeline."""
        with self._lock:
            pipelines = list(self._pipelines.values())
            self._pipelines.clear()
        for pipeline in pipelines:
            pipeline.close()
        logger.info("All pipelines closed")

    # -- Internal -----------------------------------------------------------

    def _custom_config(self, repo_id: str, files: ModelFiles) -> VariantConfig:
        if files.config_path is None:
            raise ModelLoadError(files.model_path, str(self._device), "custom model has no config file")
        try:
            config = VariantConfig.from_model_config(files.config_path, repo_id=repo_id)
        except (OSError, ValueError) as exc:
            raise ModelLoadError(files.model_path, str(self._device), f"invalid model config: {exc}") from exc
        return dataclasses.replace(
            config,
            model_filename=self._settings.custom_model_filename,
            labels_filename=self._settings.custom_labels_filename,
            config_filename=self._settings.custom_config_filename,
        )
