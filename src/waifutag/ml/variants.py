"""Model variant registry.

Each WaifuDiffusion tagger variant is paired with the preprocessing contract
its graph expects. The contract is looked up once per pipeline; the
preprocessor itself carries no per-variant branching.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
    from pathlib import Path


class ModelVariant(StrEnum):
    # v3 series
    VIT = "vit"
    SWIN_V2 = "swin-v2"
    CONVNEXT = "convnext"
    VIT_LARGE = "vit-large"
    EVA02_LARGE = "eva02-large"
    # v2 series
    V2_VIT = "v2-vit"
    V2_MOAT = "v2-moat"
    V2_SWIN_V2 = "v2-swin-v2"
    V2_CONVNEXT = "v2-convnext"
    V2_CONVNEXT_V2 = "v2-convnext-v2"


class ChannelOrder(StrEnum):
    RGB = "RGB"
    BGR = "BGR"


class TensorLayout(StrEnum):
    NHWC = "NHWC"
    NCHW = "NCHW"


class PadAlignment(StrEnum):
    CENTER = "center"
    TOP_LEFT = "top-left"


@dataclass(frozen=True)
class VariantConfig:
    """Static input/output contract for one model variant."""

    repo_id: str
    input_size: int = 448
    channel_order: ChannelOrder = ChannelOrder.BGR
    layout: TensorLayout = TensorLayout.NHWC
    value_range: tuple[float, float] = (0.0, 255.0)
    pad_alignment: PadAlignment = PadAlignment.CENTER
    pad_color: tuple[int, int, int] = (255, 255, 255)
    apply_sigmoid: bool = False
    model_filename: str = "model.onnx"
    labels_filename: str = "selected_tags.csv"
    config_filename: str = "config.json"

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        """Single-image tensor shape, batch axis included."""
        size = self.input_size
        if self.layout is TensorLayout.NCHW:
            return (1, 3, size, size)
        return (1, size, size, 3)

    def with_input_size(self, input_size: int) -> VariantConfig:
        if input_size <= 0:
            raise ValueError(f"input_size must be positive, got {input_size}")
        return dataclasses.replace(self, input_size=input_size)

    @classmethod
    def from_model_config(cls, path: Path | str, repo_id: str = "") -> VariantConfig:
        """Build a config from a timm ``config.json`` shipped next to the model.

        Only the input size is taken from the file; the tagger models share
        the rest of the contract.
        """
        with open(path, encoding="utf-8") as fh:
            raw = fh.read()
        try:
            parsed = _TimmConfig.model_validate_json(raw)
        except ValidationError as exc:
            raise ValueError(f"Invalid model config {path}: {exc}") from exc

        input_size = parsed.pretrained_cfg.input_size
        if len(input_size) != 3:
            raise ValueError(f"Invalid input size in {path}: {input_size}")
        _channels, height, width = input_size
        if height != width:
            raise ValueError(f"Only square inputs are supported, got {height}x{width}")
        return cls(repo_id=repo_id).with_input_size(height)


class _PretrainedCfg(BaseModel):
    input_size: list[int]


class _TimmConfig(BaseModel):
    architecture: str = ""
    num_classes: int = 0
    pretrained_cfg: _PretrainedCfg


VARIANT_REGISTRY: dict[ModelVariant, VariantConfig] = {
    ModelVariant.VIT: VariantConfig(repo_id="SmilingWolf/wd-vit-tagger-v3"),
    ModelVariant.SWIN_V2: VariantConfig(repo_id="SmilingWolf/wd-swinv2-tagger-v3"),
    ModelVariant.CONVNEXT: VariantConfig(repo_id="SmilingWolf/wd-convnext-tagger-v3"),
    ModelVariant.VIT_LARGE: VariantConfig(repo_id="SmilingWolf/wd-vit-large-tagger-v3"),
    ModelVariant.EVA02_LARGE: VariantConfig(repo_id="SmilingWolf/wd-eva02-large-tagger-v3"),
    ModelVariant.V2_VIT: VariantConfig(repo_id="SmilingWolf/wd-v1-4-vit-tagger-v2"),
    ModelVariant.V2_MOAT: VariantConfig(repo_id="SmilingWolf/wd-v1-4-moat-tagger-v2"),
    ModelVariant.V2_SWIN_V2: VariantConfig(repo_id="SmilingWolf/wd-v1-4-swinv2-tagger-v2"),
    ModelVariant.V2_CONVNEXT: VariantConfig(repo_id="SmilingWolf/wd-v1-4-convnext-tagger-v2"),
    ModelVariant.V2_CONVNEXT_V2: VariantConfig(repo_id="SmilingWolf/wd-v1-4-convnextv2-tagger-v2"),
}

DEFAULT_VARIANT = ModelVariant.SWIN_V2


def get_variant_config(variant: ModelVariant | str) -> VariantConfig:
    try:
        return VARIANT_REGISTRY[ModelVariant(variant)]
    except ValueError:
        raise KeyError(f"Unknown model variant: {variant}") from None
