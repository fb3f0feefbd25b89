"""Image preprocessing: decoding, pixel unpacking, and resizing.

Images enter the pipeline in one of three forms:

- a :class:`PIL.Image.Image`,
- an HxWx3 (or HxWx4, alpha ignored) uint8 RGB array,
- an HxW integer array of packed 32-bit ARGB pixels, as produced by
  ``Bitmap.getPixels`` style APIs.

All of them are normalized to an HxWx3 uint8 RGB array before encoding.
"""

from __future__ import annotations

import io
from typing import Union

import numpy as np
from numpy.typing import NDArray
from PIL import Image, ImageOps, UnidentifiedImageError

from labelkit.errors import ImageTooLargeError

ImageInput = Union[Image.Image, NDArray[np.integer]]


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow understands).
        max_pixels: Reject images with more pixels than this.

    Returns:
        HxWx3 RGB uint8 numpy array, EXIF orientation applied.

    Raises:
        ImageTooLargeError: If the image exceeds ``max_pixels``.
        ValueError: If the image cannot be decoded.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise ImageTooLargeError(f"Image has {width * height} pixels, limit is {max_pixels}")
            oriented = ImageOps.exif_transpose(img)
            return np.asarray(oriented.convert("RGB"), dtype=np.uint8)
    except Image.DecompressionBombError as exc:
        raise ImageTooLargeError(str(exc)) from exc
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc


def unpack_argb(pixels: NDArray[np.integer]) -> NDArray[np.uint8]:
    """Split packed 32-bit ARGB pixels into an HxWx3 RGB array, dropping alpha.

    Signed 32-bit input (negative values for opaque pixels) is accepted.
    """
    packed = np.asarray(pixels)
    if packed.ndim != 2 or not np.issubdtype(packed.dtype, np.integer):
        raise ValueError(f"Expected an HxW integer array of packed ARGB pixels, got {packed.dtype} {packed.shape}")
    packed = packed.astype(np.int64) & 0xFFFFFFFF

    rgb = np.empty((*packed.shape, 3), dtype=np.uint8)
    rgb[..., 0] = (packed >> 16) & 0xFF
    rgb[..., 1] = (packed >> 8) & 0xFF
    rgb[..., 2] = packed & 0xFF
    return rgb


def as_rgb_array(image: ImageInput) -> NDArray[np.uint8]:
    """Normalize any supported image input to an HxWx3 uint8 RGB array."""
    if isinstance(image, Image.Image):
        return np.asarray(image.convert("RGB"), dtype=np.uint8)

    array = np.asarray(image)
    if array.ndim == 2:
        return unpack_argb(array)
    if array.ndim == 3 and array.shape[2] in (3, 4):
        if array.dtype != np.uint8:
            raise ValueError(f"Expected uint8 channel values, got {array.dtype}")
        return array[..., :3]
    raise ValueError(f"Unsupported image array shape: {array.shape}")


def resize_rgb(image: NDArray[np.uint8], width: int, height: int) -> NDArray[np.uint8]:
    """Bilinearly resize an RGB array to exactly ``width`` x ``height``.

    The image is stretched: no cropping and no aspect ratio preservation.
    """
    if image.shape[0] == height and image.shape[1] == width:
        return image
    resized = Image.fromarray(np.ascontiguousarray(image)).resize(
        (width, height), resample=Image.Resampling.BILINEAR
    )
    return np.asarray(resized, dtype=np.uint8)
