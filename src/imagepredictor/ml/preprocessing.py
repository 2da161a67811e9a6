"""Image preprocessing pipeline.

Decoding, EXIF orientation, pixel buffer extraction, crop-and-scale to the
model input size, and conversion to an NCHW float tensor.
"""

from __future__ import annotations

import io
import logging
from enum import IntEnum, StrEnum
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from imagepredictor.errors import ImageDecodeError, PixelBufferError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

EXIF_ORIENTATION_TAG = 0x0112


class Orientation(IntEnum):
    """EXIF orientation values (TIFF tag 274)."""

    UP = 1
    UP_MIRRORED = 2
    DOWN = 3
    DOWN_MIRRORED = 4
    LEFT_MIRRORED = 5
    RIGHT = 6
    RIGHT_MIRRORED = 7
    LEFT = 8


class ImageCropAndScaleOption(StrEnum):
    """How an image is fitted to the model's input dimensions."""

    CENTER_CROP = "center_crop"
    SCALE_FIT = "scale_fit"
    SCALE_FILL = "scale_fill"


def decode_image(image_bytes: bytes, max_pixels: int) -> Image.Image:
    """Decode raw image bytes with Pillow.

    Raises:
        ImageDecodeError: If the bytes are not a supported image or the image
            exceeds ``max_pixels``.
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"Cannot decode image: {exc}") from exc

    width, height = image.size
    if width * height > max_pixels:
        raise ImageDecodeError(f"Image too large: {width}x{height} exceeds {max_pixels} pixels")

    try:
        image.load()
    except (OSError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"Cannot decode image: {exc}") from exc
    return image


def read_orientation(image: Image.Image) -> Orientation:
    """Return the EXIF orientation of ``image``, defaulting to ``UP``."""
    value = image.getexif().get(EXIF_ORIENTATION_TAG, Orientation.UP)
    try:
        return Orientation(int(value))
    except (TypeError, ValueError):
        logger.debug("Ignoring invalid EXIF orientation %r", value)
        return Orientation.UP


def extract_pixel_buffer(image: Image.Image) -> NDArray[np.uint8]:
    """Return the image's pixels as an HxWx3 RGB uint8 array.

    Raises:
        PixelBufferError: If the image is empty or cannot be converted to RGB.
    """
    width, height = image.size
    if width == 0 or height == 0:
        raise PixelBufferError(f"Image has no pixel data ({width}x{height})")
    try:
        rgb = image if image.mode == "RGB" else image.convert("RGB")
        pixels = np.asarray(rgb, dtype=np.uint8)
    except (OSError, ValueError) as exc:
        raise PixelBufferError(f"Cannot extract pixel buffer: {exc}") from exc
    # np.asarray may hand back a read-only view of Pillow's buffer.
    return np.ascontiguousarray(pixels)


def apply_orientation(pixels: NDArray[np.uint8], orientation: Orientation) -> NDArray[np.uint8]:
    """Rotate/flip ``pixels`` so the image is upright."""
    if orientation == Orientation.UP_MIRRORED:
        return np.fliplr(pixels)
    if orientation == Orientation.DOWN:
        return np.rot90(pixels, 2)
    if orientation == Orientation.DOWN_MIRRORED:
        return np.flipud(pixels)
    if orientation == Orientation.LEFT_MIRRORED:
        return np.transpose(pixels, (1, 0, 2))
    if orientation == Orientation.RIGHT:
        return np.rot90(pixels, -1)
    if orientation == Orientation.RIGHT_MIRRORED:
        return np.transpose(np.rot90(pixels, 2), (1, 0, 2))
    if orientation == Orientation.LEFT:
        return np.rot90(pixels, 1)
    return pixels


def crop_and_scale(
    pixels: NDArray[np.uint8],
    size: tuple[int, int],
    option: ImageCropAndScaleOption,
) -> NDArray[np.uint8]:
    """Fit an HxWx3 image to ``size`` (width, height) using ``option``.

    CENTER_CROP scales the image until it covers the target and keeps the
    central region. SCALE_FIT scales it to fit inside the target and pads
    with black. SCALE_FILL stretches it to the target, ignoring aspect ratio.
    """
    target_w, target_h = size
    image = Image.fromarray(np.ascontiguousarray(pixels))
    width, height = image.size

    if option == ImageCropAndScaleOption.SCALE_FILL:
        return np.asarray(image.resize((target_w, target_h), Image.Resampling.BILINEAR))

    if option == ImageCropAndScaleOption.CENTER_CROP:
        scale = max(target_w / width, target_h / height)
    else:
        scale = min(target_w / width, target_h / height)

    new_w = max(1, round(width * scale))
    new_h = max(1, round(height * scale))
    resized = image.resize((new_w, new_h), Image.Resampling.BILINEAR)

    if option == ImageCropAndScaleOption.CENTER_CROP:
        left = (new_w - target_w) // 2
        top = (new_h - target_h) // 2
        return np.asarray(resized.crop((left, top, left + target_w, top + target_h)))

    canvas = Image.new("RGB", (target_w, target_h))
    canvas.paste(resized, ((target_w - new_w) // 2, (target_h - new_h) // 2))
    return np.asarray(canvas)


def to_input_tensor(
    pixels: NDArray[np.uint8],
    mean: Sequence[float],
    std: Sequence[float],
) -> NDArray[np.float32]:
    """Normalize an HxWx3 uint8 image into a 1x3xHxW float32 tensor."""
    scaled = pixels.astype(np.float32) / 255.0
    normalized = (scaled - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return np.ascontiguousarray(normalized.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
