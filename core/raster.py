from __future__ import annotations

import io
import itertools
from typing import Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from core.errors import DecodeError


_ids = itertools.count(1)

_FORMAT_MIME = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
}

# DecompressionBombError derives from Exception, not OSError.
_DECODE_ERRORS = (
    UnidentifiedImageError, OSError, SyntaxError, ValueError, EOFError, Image.DecompressionBombError
)


def _next_resource_id() -> str:
    return f"raster-{next(_ids)}"


def pil_to_np_rgba(img: Image.Image) -> np.ndarray:
    arr = np.array(img.convert("RGBA"), dtype=np.uint8)
    if arr.ndim != 3 or arr.shape[2] != 4:
        raise ValueError("Expected RGBA image")
    return arr


def np_rgba_to_pil(arr: np.ndarray) -> Image.Image:
    return Image.fromarray(np.ascontiguousarray(arr, dtype=np.uint8))


class Raster:
    """
    Handle over an encoded image payload with a known native size.

    The payload is immutable; two handles may share the same bytes but each
    handle has its own resource id and is released independently.
    """

    __slots__ = ("_data", "_width", "_height", "_mime_type", "_resource_id")

    def __init__(self, data: bytes, width: int, height: int, mime_type: str = "image/png"):
        if width <= 0 or height <= 0:
            raise ValueError("raster dimensions must be positive")
        self._data: Optional[bytes] = bytes(data)
        self._width = int(width)
        self._height = int(height)
        self._mime_type = mime_type
        self._resource_id = _next_resource_id()

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: Optional[str] = None, verify: bool = False) -> "Raster":
        """
        Wrap encoded bytes. Only the header is read unless `verify` is set, in
        which case the whole payload is decoded once so a truncated body fails here.
        """
        try:
            with Image.open(io.BytesIO(data)) as img:
                width, height = img.size
                fmt = img.format or "PNG"
                if verify:
                    img.load()
        except _DECODE_ERRORS as e:
            raise DecodeError(f"unrecognized image data ({e})") from e
        return cls(data, width, height, mime_type or _FORMAT_MIME.get(fmt, "image/png"))

    @classmethod
    def from_image(cls, img: Image.Image, fmt: str = "PNG", **save_kwargs) -> "Raster":
        buf = io.BytesIO()
        if fmt.upper() == "JPEG" and img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        img.save(buf, format=fmt, **save_kwargs)
        return cls(buf.getvalue(), img.width, img.height, _FORMAT_MIME.get(fmt.upper(), "image/png"))

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "Raster":
        return cls.from_image(np_rgba_to_pil(arr))

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def size(self) -> Tuple[int, int]:
        return (self._width, self._height)

    @property
    def mime_type(self) -> str:
        return self._mime_type

    @property
    def resource_id(self) -> str:
        return self._resource_id

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def data(self) -> bytes:
        if self._data is None:
            raise DecodeError(f"raster {self._resource_id} has been released")
        return self._data

    def decode(self) -> Image.Image:
        """Decode into a fully loaded RGBA image. Raises DecodeError on corrupt data."""
        payload = self.data
        try:
            with Image.open(io.BytesIO(payload)) as img:
                img.load()
                return img.convert("RGBA")
        except _DECODE_ERRORS as e:
            raise DecodeError(f"raster {self._resource_id} could not be decoded ({e})") from e

    def to_array(self) -> np.ndarray:
        return pil_to_np_rgba(self.decode())

    def clone(self) -> "Raster":
        return Raster(self.data, self._width, self._height, self._mime_type)

    def release(self) -> None:
        self._data = None

    def __repr__(self) -> str:
        state = "released" if self.released else self._mime_type
        return f"Raster({self._resource_id}, {self._width}x{self._height}, {state})"
