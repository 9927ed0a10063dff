"""Packing decoded RGBA pixels into an RGB model input tensor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from snaplabel.errors import InvariantViolation

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from snaplabel.ml.decoder import DecodedImage


@dataclass(frozen=True)
class InputTensor:
    """HxWx3 uint8 RGB tensor, values in [0, 255]."""

    data: NDArray[np.uint8]

    @property
    def shape(self) -> tuple[int, int, int]:
        height, width, channels = self.data.shape
        return height, width, channels


class TensorPacker:
    """Strips the alpha byte from every pixel, keeping row-major order."""

    def pack(self, image: DecodedImage) -> InputTensor:
        """Convert a DecodedImage into an InputTensor.

        Raises:
            InvariantViolation: If the pixel buffer does not hold width*height*4 bytes.
        """
        if image.width <= 0 or image.height <= 0:
            raise InvariantViolation(f"Invalid image dimensions {image.width}x{image.height}")

        expected = image.width * image.height * 4
        if len(image.pixels) != expected:
            raise InvariantViolation(
                f"Pixel buffer has {len(image.pixels)} bytes, expected {expected} "
                f"for a {image.width}x{image.height} RGBA image"
            )

        rgba = np.frombuffer(image.pixels, dtype=np.uint8).reshape(image.height, image.width, 4)
        return InputTensor(data=np.ascontiguousarray(rgba[:, :, :3]))
