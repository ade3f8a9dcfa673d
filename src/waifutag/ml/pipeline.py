"""Tagging pipeline: preprocess -> execute -> postprocess for one model.

A pipeline owns one ``BackendSession`` and one ``LabelTable``. Both are
read-only once the pipeline is ready, so a single instance can serve many
``tag()`` calls, including concurrent ones from an orchestration layer.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from waifutag.ml import backend as backend_module
from waifutag.ml.backend import DeviceSelector
from waifutag.ml.errors import BackendExecutionError, LengthMismatchError, PipelineNotReadyError
from waifutag.ml.labels import LabelTable
from waifutag.ml.postprocessing import postprocess
from waifutag.ml.preprocessing import preprocess, preprocess_batch
from waifutag.ml.variants import ModelVariant, VariantConfig, get_variant_config

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence
    from pathlib import Path

    from waifutag.config import Settings
    from waifutag.ml.backend import BackendSession
    from waifutag.ml.labels import TagCategory
    from waifutag.ml.postprocessing import TaggingResult, ThresholdMap
    from waifutag.ml.preprocessing import ImageInput

logger = logging.getLogger(__name__)


class PipelineState(StrEnum):
    UNINITIALIZED = "uninitialized"
    LOADED = "loaded"
    READY = "ready"
    CLOSED = "closed"


@dataclass(frozen=True)
class TagOptions:
    """Per-call tagging options."""

    thresholds: ThresholdMap | None = None
    sort_by_score: bool = False
    mcut: bool = False


class TaggingPipeline:
    """Owns the session/table pair for one model variant."""

    def __init__(
        self,
        model_path: Path | str,
        labels_path: Path | str,
        variant: ModelVariant | str | VariantConfig,
        device: DeviceSelector | str | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._model_path = model_path
        self._labels_path = labels_path
        if isinstance(variant, VariantConfig):
            self.variant: ModelVariant | None = None
            self.config = variant
        else:
            self.variant = ModelVariant(variant)
            self.config = get_variant_config(self.variant)
        if isinstance(device, str):
            device = DeviceSelector.parse(device)
        self.device: DeviceSelector = device or DeviceSelector()
        self._settings = settings

        self._state = PipelineState.UNINITIALIZED
        self._failed = False
        self._lock = threading.Lock()
        self._session: BackendSession | None = None
        self._table: LabelTable | None = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def labels(self) -> LabelTable:
        if self._table is None:
            raise PipelineNotReadyError(self._state.value, "read labels")
        return self._table

    # -- Lifecycle ----------------------------------------------------------

    def load(self) -> TaggingPipeline:
        """Load the label table and the session, then become ready.

        Any failure releases what was acquired, leaves the pipeline
        uninitialized and makes the instance unusable.

        Raises:
            MalformedTableError, ModelLoadError, LengthMismatchError: On load failure.
            PipelineNotReadyError: If the instance already failed or was used.
        """
        with self._lock:
            if self._failed or self._state is not PipelineState.UNINITIALIZED:
                state = "failed" if self._failed else self._state.value
                raise PipelineNotReadyError(state, "load")

            started = time.perf_counter()
            session: BackendSession | None = None
            try:
                table = LabelTable.load(self._labels_path, self._default_thresholds())
                session = backend_module.load(self._model_path, self.config, self.device, self._settings)
                width = session.output_width
                if width is not None and width != len(table):
                    raise LengthMismatchError(expected=len(table), actual=width)
            except Exception:
                self._failed = True
                if session is not None:
                    session.close()
                raise

            self._table = table
            self._session = session
            self._state = PipelineState.LOADED
            logger.debug("Pipeline loaded: %s", self)
            self._state = PipelineState.READY

        logger.info(
            "Pipeline ready: %s on %s with %d labels (%.2fs)",
            self.variant or self.config.repo_id,
            self.device,
            len(table),
            time.perf_counter() - started,
        )
        return self

    def close(self) -> None:
        """Release the session. Safe to call in any state, more than once."""
        with self._lock:
            session, self._session = self._session, None
            if self._state is PipelineState.READY or session is not None:
                self._state = PipelineState.CLOSED
        if session is not None:
            session.close()

    def __enter__(self) -> TaggingPipeline:
        if self._state is PipelineState.UNINITIALIZED:
            self.load()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- Tagging ------------------------------------------------------------

    def tag(self, image: ImageInput, options: TagOptions | None = None) -> TaggingResult:
        """Tag a single image.

        Raises:
            PipelineNotReadyError: If the pipeline is not ready, including when
                ``close()`` runs while the call is in flight.
            UnsupportedFormatError, EmptyImageError: On bad input.
            ShapeMismatchError, BackendExecutionError: On inference failure.
            LengthMismatchError: If the model output does not match the labels.
        """
        session, table = self._ready("tag")
        options = options or TagOptions()
        tensor = preprocess(image, self.config, max_pixels=self._max_pixels())
        with self._closing_guard(session, "tag"):
            scores = session.execute(tensor)
        return postprocess(
            scores,
            table,
            options.thresholds,
            sort_by_score=options.sort_by_score,
            mcut=options.mcut,
        )

    def tag_batch(self, images: Sequence[ImageInput], options: TagOptions | None = None) -> list[TaggingResult]:
        """Tag several images with one graph execution.

        All-or-nothing: a bad image fails the whole batch.
        """
        session, table = self._ready("tag")
        if not images:
            return []
        options = options or TagOptions()
        tensor = preprocess_batch(images, self.config, max_pixels=self._max_pixels())
        with self._closing_guard(session, "tag"):
            batch_scores = session.execute_batch(tensor)
        return [
            postprocess(
                scores,
                table,
                options.thresholds,
                sort_by_score=options.sort_by_score,
                mcut=options.mcut,
            )
            for scores in batch_scores
        ]

    # -- Internal -----------------------------------------------------------

    def _ready(self, operation: str) -> tuple[BackendSession, LabelTable]:
        session, table = self._session, self._table
        if self._state is not PipelineState.READY or session is None or table is None:
            raise PipelineNotReadyError(self._state.value, operation)
        return session, table

    @contextmanager
    def _closing_guard(self, session: BackendSession, operation: str) -> Iterator[None]:
        try:
            yield
        except BackendExecutionError as exc:
            # The session was released by a concurrent close().
            if session.closed:
                raise PipelineNotReadyError(PipelineState.CLOSED.value, operation) from exc
            raise

    def _default_thresholds(self) -> dict[TagCategory, float] | None:
        if self._settings is None:
            return None
        return self._settings.default_thresholds()

    def _max_pixels(self) -> int | None:
        return self._settings.max_image_pixels if self._settings is not None else None

    def __repr__(self) -> str:
        return f"TaggingPipeline({self.variant or self.config.repo_id!s}, {self.device}, {self._state.value})"


def tag_image(
    image: ImageInput,
    model_path: Path | str,
    labels_path: Path | str,
    variant: ModelVariant | str | VariantConfig,
    device: DeviceSelector | str | None = None,
    thresholds: Mapping[TagCategory, float] | None = None,
) -> TaggingResult:
    """Load a pipeline, tag one image, and release the pipeline."""
    with TaggingPipeline(model_path, labels_path, variant, device).load() as pipeline:
        return pipeline.tag(image, TagOptions(thresholds=thresholds))
