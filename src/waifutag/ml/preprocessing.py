"""Image preprocessing for the tagger models.

Decodes an input image and turns it into the fixed-shape tensor described by
a ``VariantConfig``:

1. composite transparency onto the pad color, convert to RGB
2. resize so the longer edge equals the target size (aspect preserved)
3. pad the shorter edge to a square (centered unless the variant says
   top-left; an odd remainder goes to the bottom/right)
4. map ``[0, 255]`` into the variant's value range
5. reorder channels and lay out NHWC or NCHW, with a leading batch axis

No randomness and a fixed resampling filter, so the same image and variant
always give a bit-identical tensor.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from waifutag.ml.errors import EmptyImageError, UnsupportedFormatError
from waifutag.ml.variants import ChannelOrder, PadAlignment, TensorLayout

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from waifutag.ml.variants import VariantConfig

logger = logging.getLogger(__name__)

ImageInput = bytes | bytearray | str | Path | Image.Image

RESAMPLE = Image.Resampling.BICUBIC


def decode_image(image: ImageInput, max_pixels: int | None = None) -> Image.Image:
    """Decode bytes or a file path into a fully loaded PIL image.

    PIL images are passed through unchanged.

    Raises:
        UnsupportedFormatError: If the data is not a decodable image.
        EmptyImageError: If either dimension is zero.
    """
    if isinstance(image, Image.Image):
        _check_dimensions(image.width, image.height)
        return image

    if isinstance(image, (bytes, bytearray)):
        source = f"<{len(image)} bytes>"
        stream: io.BytesIO | str | Path = io.BytesIO(image)
    elif isinstance(image, (str, Path)):
        source = str(image)
        stream = image
    else:
        raise TypeError(f"Unsupported image input type: {type(image).__name__}")

    try:
        decoded = Image.open(stream)
        try:
            if max_pixels is not None and decoded.width * decoded.height > max_pixels:
                raise UnsupportedFormatError(
                    source,
                    f"{decoded.width}x{decoded.height} exceeds the {max_pixels} pixel limit",
                )
            decoded.load()
        except Exception:
            decoded.close()
            raise
    except UnsupportedFormatError:
        raise
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError, SyntaxError) as exc:
        raise UnsupportedFormatError(source, str(exc) or type(exc).__name__) from exc

    _check_dimensions(decoded.width, decoded.height)
    # Camera images may carry a rotation flag; tags should follow what a viewer shows.
    return ImageOps.exif_transpose(decoded)


def to_rgb(image: Image.Image, background: tuple[int, int, int] = (255, 255, 255)) -> Image.Image:
    """Flatten any mode to RGB, compositing transparency onto ``background``."""
    if image.mode == "RGB":
        return image
    if image.mode in ("I", "F") or image.mode.startswith("I;16"):
        image = _to_8bit(image)
    if image.mode == "P" and "transparency" in image.info:
        image = image.convert("RGBA")
    if image.mode in ("RGBA", "LA", "PA"):
        rgba = image.convert("RGBA")
        canvas = Image.new("RGBA", rgba.size, (*background, 255))
        canvas.alpha_composite(rgba)
        return canvas.convert("RGB")
    return image.convert("RGB")


def resize_longer_edge(image: Image.Image, target: int) -> Image.Image:
    width, height = image.size
    if width >= height:
        new_width = target
        new_height = max(1, round(height * target / width))
    else:
        new_height = target
        new_width = max(1, round(width * target / height))
    if (new_width, new_height) == (width, height):
        return image
    return image.resize((new_width, new_height), resample=RESAMPLE)


def pad_to_square(
    image: Image.Image,
    size: int,
    color: tuple[int, int, int],
    alignment: PadAlignment = PadAlignment.CENTER,
) -> Image.Image:
    width, height = image.size
    if alignment is PadAlignment.CENTER:
        offset = ((size - width) // 2, (size - height) // 2)
    else:
        offset = (0, 0)
    canvas = Image.new("RGB", (size, size), color)
    canvas.paste(image, offset)
    return canvas


def to_tensor(image: Image.Image, config: VariantConfig) -> NDArray[np.float32]:
    """Convert a square RGB image to a batched float32 tensor."""
    pixels = np.asarray(image, dtype=np.uint8)  # H, W, RGB
    if config.channel_order is ChannelOrder.BGR:
        pixels = pixels[:, :, ::-1]

    tensor = pixels.astype(np.float32)
    low, high = config.value_range
    if (low, high) != (0.0, 255.0):
        tensor = tensor * np.float32((high - low) / 255.0) + np.float32(low)

    if config.layout is TensorLayout.NCHW:
        tensor = tensor.transpose(2, 0, 1)
    return np.ascontiguousarray(tensor[np.newaxis, ...], dtype=np.float32)


def preprocess(image: ImageInput, config: VariantConfig, max_pixels: int | None = None) -> NDArray[np.float32]:
    """Turn one image into the tensor the variant's graph expects.

    Returns:
        float32 array of shape ``config.input_shape``.

    Raises:
        UnsupportedFormatError: If the image cannot be decoded.
        EmptyImageError: If the image has a zero dimension.
    """
    decoded = decode_image(image, max_pixels=max_pixels)
    rgb = to_rgb(decoded, config.pad_color)
    resized = resize_longer_edge(rgb, config.input_size)
    square = pad_to_square(resized, config.input_size, config.pad_color, config.pad_alignment)
    tensor = to_tensor(square, config)
    logger.debug("Preprocessed %dx%d %s image to %s", decoded.width, decoded.height, decoded.mode, tensor.shape)
    return tensor


def preprocess_batch(
    images: Sequence[ImageInput], config: VariantConfig, max_pixels: int | None = None
) -> NDArray[np.float32]:
    """Preprocess several images into one ``(N, ...)`` tensor.

    Fails on the first bad image; there are no placeholder entries.
    """
    if not images:
        raise ValueError("preprocess_batch needs at least one image")
    return np.concatenate([preprocess(image, config, max_pixels=max_pixels) for image in images], axis=0)


def _check_dimensions(width: int, height: int) -> None:
    if width <= 0 or height <= 0:
        raise EmptyImageError(width, height)


def _to_8bit(image: Image.Image) -> Image.Image:
    """Scale a 16/32-bit integer or float grayscale image down to mode ``L``.

    PIL's own conversion clips instead of scaling. Integer modes are taken as
    16-bit data, float mode as ``[0, 1]``.
    """
    pixels = np.asarray(image)
    if image.mode == "F":
        scaled = np.clip(pixels * 255.0, 0.0, 255.0).round()
    else:
        scaled = np.clip(pixels.astype(np.int64) >> 8, 0, 255)
    return Image.fromarray(scaled.astype(np.uint8))
