"""Tensor encoding: turn an image into the input buffer a model expects."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from labelkit.ml.preprocessing import as_rgb_array, resize_rgb

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from labelkit.ml.preprocessing import ImageInput

logger = logging.getLogger(__name__)

MEAN: int = 128
STD: float = 128.0


class TensorEncoding(StrEnum):
    QUANTIZED_BYTE = "quantized_byte"
    NORMALIZED_FLOAT32 = "normalized_float32"

    @property
    def dtype(self) -> np.dtype:
        if self is TensorEncoding.QUANTIZED_BYTE:
            return np.dtype(np.uint8)
        return np.dtype(np.float32)


@dataclass(frozen=True)
class ModelIOSpec:
    """Input layout of a classification model: NHWC, RGB."""

    width: int = 224
    height: int = 224
    encoding: TensorEncoding = TensorEncoding.QUANTIZED_BYTE
    channels: int = 3
    batch_size: int = 1

    def __post_init__(self) -> None:
        if self.batch_size != 1:
            raise ValueError(f"Only batch size 1 is supported, got {self.batch_size}")
        if self.channels != 3:
            raise ValueError(f"Only 3-channel RGB input is supported, got {self.channels}")
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Input size must be positive, got {self.width}x{self.height}")

    @property
    def shape(self) -> tuple[int, int, int, int]:
        return (self.batch_size, self.height, self.width, self.channels)

    @property
    def bytes_per_element(self) -> int:
        return self.encoding.dtype.itemsize

    @property
    def nbytes(self) -> int:
        """Exact size of an encoded input tensor in bytes."""
        return self.batch_size * self.width * self.height * self.channels * self.bytes_per_element


class TensorEncoder:
    """Encodes images into a reusable input buffer.

    The backing buffer is allocated once and fully overwritten on every call,
    so the array returned by :meth:`encode` is only valid until the next call.
    An encoder must not be used by two callers at once.
    """

    def __init__(self, io_spec: ModelIOSpec) -> None:
        self._io_spec = io_spec
        self._buffer: NDArray[np.generic] = np.zeros(io_spec.shape, dtype=io_spec.encoding.dtype)
        logger.debug("Allocated %s input buffer of %d bytes", io_spec.encoding, io_spec.nbytes)

    @property
    def io_spec(self) -> ModelIOSpec:
        return self._io_spec

    def encode(self, image: ImageInput) -> NDArray[np.generic]:
        """Resize and encode an image into the model's input tensor.

        Returns:
            The backing buffer, shape ``(1, height, width, 3)``, uint8 or float32.

        Raises:
            ValueError: If the image input is not in a supported form.
        """
        spec = self._io_spec
        # Resize before touching the buffer so a failure leaves it intact.
        rgb = resize_rgb(as_rgb_array(image), spec.width, spec.height)

        out = self._buffer[0]
        if spec.encoding is TensorEncoding.QUANTIZED_BYTE:
            np.copyto(out, rgb)
        else:
            np.subtract(rgb, MEAN, out=out, dtype=np.float32)
            np.divide(out, STD, out=out)
        return self._buffer

    def encode_bytes(self, image: ImageInput) -> bytes:
        """Encode an image and return the tensor as raw native-order bytes."""
        return self.encode(image).tobytes()
