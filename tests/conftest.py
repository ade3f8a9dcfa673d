"""Shared fixtures: a small WD-style label table and a fake ONNX session."""

from __future__ import annotations

import io
from collections.abc import Sequence
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest
from PIL import Image

LABELS_CSV = """tag_id,name,category,count
9999999,general,9,807489
9999998,sensitive,9,656541
9999997,questionable,9,254564
9999996,explicit,9,210000
470575,1girl,0,4900000
212816,solo,0,4000000
13197,long_hair,0,3300000
1231,hatsune_miku,4,120000
"""

NUM_LABELS = 8

TIMM_CONFIG_JSON = '{"architecture": "vit_base_patch16_224", "num_classes": 8, "pretrained_cfg": {"input_size": [3, 448, 448]}}'


class FakeSession:
    """Stands in for ``onnxruntime.InferenceSession``.

    Returns ``scores`` for every image in the batch and records each call.
    """

    def __init__(
        self,
        scores: Sequence[float] | None = None,
        input_shape: Sequence[int | str | None] = ("batch_size", 448, 448, 3),
        output_width: int | str = NUM_LABELS,
        providers: Sequence[str] = ("CPUExecutionProvider",),
        error: Exception | None = None,
    ) -> None:
        self.scores = np.asarray(scores if scores is not None else [0.0] * NUM_LABELS, dtype=np.float32)
        self._input_shape = list(input_shape)
        self._output_width = output_width
        self._providers = list(providers)
        self.error = error
        self.calls: list[np.ndarray] = []

    def get_inputs(self) -> list[SimpleNamespace]:
        return [SimpleNamespace(name="input_1:0", shape=self._input_shape)]

    def get_outputs(self) -> list[SimpleNamespace]:
        return [SimpleNamespace(name="predictions_sigmoid", shape=["batch_size", self._output_width])]

    def get_providers(self) -> list[str]:
        return self._providers

    def run(self, output_names: list[str], feeds: dict[str, np.ndarray]) -> list[np.ndarray]:
        assert output_names == ["predictions_sigmoid"]
        tensor = feeds["input_1:0"]
        self.calls.append(tensor)
        if self.error is not None:
            raise self.error
        return [np.tile(self.scores, (tensor.shape[0], 1))]


@pytest.fixture()
def labels_path(tmp_path: Path) -> Path:
    path = tmp_path / "selected_tags.csv"
    path.write_text(LABELS_CSV, encoding="utf-8")
    return path


@pytest.fixture()
def model_path(tmp_path: Path) -> Path:
    path = tmp_path / "model.onnx"
    path.write_bytes(b"onnx-placeholder")
    return path


def make_image(width: int, height: int, color: tuple[int, ...] = (200, 30, 90), mode: str = "RGB") -> Image.Image:
    return Image.new(mode, (width, height), color)


def image_bytes(width: int, height: int, fmt: str = "PNG", **kwargs: object) -> bytes:
    buffer = io.BytesIO()
    make_image(width, height, **kwargs).save(buffer, format=fmt)  # type: ignore[arg-type]
    return buffer.getvalue()


def gradient_image(width: int, height: int) -> Image.Image:
    """Non-uniform image so resampling actually has something to do."""
    xs = np.linspace(0, 255, width, dtype=np.float32)
    ys = np.linspace(0, 255, height, dtype=np.float32)
    r = np.tile(xs, (height, 1))
    g = np.tile(ys[:, None], (1, width))
    b = (r + g) / 2
    return Image.fromarray(np.stack([r, g, b], axis=-1).astype(np.uint8), "RGB")


def fake_hub_download(repo_id: str, filename: str, local_dir: str) -> str:
    """Write placeholder artifacts where ``hf_hub_download`` would put them."""
    path = Path(local_dir) / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    if filename.endswith(".csv"):
        path.write_text(LABELS_CSV, encoding="utf-8")
    elif filename.endswith(".json"):
        path.write_text(TIMM_CONFIG_JSON, encoding="utf-8")
    else:
        path.write_bytes(b"onnx-placeholder")
    return str(path)
