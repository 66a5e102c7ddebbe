from __future__ import annotations

import base64
import binascii
import io
from dataclasses import dataclass
from typing import Tuple

from PIL import Image

from runner.errors import ProtocolError


@dataclass(frozen=True)
class DecodedImage:
    """Packed 8-bit RGB pixels, row-major, no padding. Alpha is implicitly 255."""
    width: int
    height: int
    data: bytes

    def pixel(self, x: int, y: int) -> Tuple[int, int, int, int]:
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"pixel ({x}, {y}) outside {self.width}x{self.height}")
        i = 3 * (y * self.width + x)
        return self.data[i], self.data[i + 1], self.data[i + 2], 255

    def to_pil(self, mode: str = "RGBA") -> Image.Image:
        img = Image.frombytes("RGB", (self.width, self.height), self.data)
        return img.convert(mode) if mode != "RGB" else img

    def to_base64(self) -> str:
        """Same layout the worker emits, for image-to-image and inpainting inputs."""
        return base64.b64encode(self.data).decode("ascii")

    @classmethod
    def from_pil(cls, img: Image.Image) -> "DecodedImage":
        rgb = img.convert("RGB")
        return cls(rgb.width, rgb.height, rgb.tobytes())


def decode_rgb_bytes(raw: bytes, width: int, height: int) -> DecodedImage:
    if width <= 0 or height <= 0:
        raise ProtocolError(f"invalid image size {width}x{height}")
    if not raw:
        raise ProtocolError("no image data")
    expected = 3 * width * height
    if len(raw) != expected:
        raise ProtocolError(f"image payload is {len(raw)} bytes, expected {expected} for {width}x{height} RGB")
    return DecodedImage(width, height, bytes(raw))


def decode_rgb_payload(payload: str, width: int, height: int) -> DecodedImage:
    """Decode the base64 RGB payload of a ``complete`` event."""
    if not payload:
        raise ProtocolError("no image data")
    if not isinstance(payload, str):
        raise ProtocolError(f"image payload must be a base64 string, got {type(payload).__name__}")
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"image payload is not valid base64: {e}") from e
    return decode_rgb_bytes(raw, width, height)


def decode_jpeg(content: bytes) -> DecodedImage:
    """Decode an upscaler response body."""
    if not content:
        raise ProtocolError("empty upscale response")
    try:
        with Image.open(io.BytesIO(content)) as img:
            return DecodedImage.from_pil(img)
    except OSError as e:
        raise ProtocolError(f"upscale response is not a decodable image: {e}") from e


def encode_png(image: DecodedImage) -> bytes:
    buf = io.BytesIO()
    image.to_pil("RGB").save(buf, format="PNG")
    return buf.getvalue()


def load_image_file(path: str) -> DecodedImage:
    with Image.open(path) as img:
        return DecodedImage.from_pil(img)
