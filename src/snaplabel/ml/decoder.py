"""JPEG decoding into an RGBA pixel buffer."""

from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from snaplabel.errors import DecodeError

CHANNELS_PER_PIXEL = 4


@dataclass(frozen=True)
class DecodedImage:
    """Decoded pixels in RGBA interleaved, row-major order."""

    width: int
    height: int
    pixels: bytes


class JpegDecoder:
    """Decodes baseline and progressive JPEGs with Pillow.

    The output is always RGBA so downstream packing has a single contract,
    whatever the source colour mode (L, RGB, CMYK).
    """

    def __init__(self, max_image_pixels: int) -> None:
        self._max_image_pixels = max_image_pixels

    def decode(self, data: bytes) -> DecodedImage:
        """Decode ``data`` into a DecodedImage.

        Raises:
            DecodeError: If the data is empty, not a JPEG, truncated, or too large.
        """
        if not data:
            raise DecodeError("Image buffer is empty")

        try:
            with Image.open(io.BytesIO(data), formats=["JPEG"]) as img:
                pixel_count = img.width * img.height
                if pixel_count > self._max_image_pixels:
                    raise DecodeError(
                        f"Image is {img.width}x{img.height} ({pixel_count} pixels), "
                        f"limit is {self._max_image_pixels}"
                    )
                # Force a full decode so truncated streams fail here.
                img.load()
                rgba = img.convert("RGBA")
        except UnidentifiedImageError as exc:
            raise DecodeError("Data is not a JPEG image") from exc
        except Image.DecompressionBombError as exc:
            raise DecodeError(str(exc)) from exc
        except (OSError, SyntaxError, ValueError) as exc:
            raise DecodeError(f"Malformed JPEG: {exc}") from exc

        return DecodedImage(width=rgba.width, height=rgba.height, pixels=rgba.tobytes())
