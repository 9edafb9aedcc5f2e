from __future__ import annotations

import io
import math
from typing import Optional, Tuple

import numpy as np
from PIL import Image

from core.errors import InputError
from core.raster import Raster


MODE_ADD = "add"
MODE_ERASE = "erase"
_MODES = (MODE_ADD, MODE_ERASE)

# Painted pixels export as opaque white; the service only reads alpha.
_INK = (255, 255, 255, 255)


class MaskBuffer:
    """
    Native-resolution brush mask built from add/erase strokes.

    Points are native pixel coordinates. Consecutive points of one stroke are
    joined by stamping discs along the segment, so fast pointer motion still
    leaves a continuous band.
    """

    def __init__(self, width: int, height: int):
        if width <= 0 or height <= 0:
            raise InputError(f"mask size {width}x{height} is empty")
        self._w = int(width)
        self._h = int(height)
        self._mask = np.zeros((self._h, self._w), dtype=bool)
        self._last: Optional[Tuple[float, float]] = None

    @property
    def size(self) -> Tuple[int, int]:
        return (self._w, self._h)

    @property
    def mask(self) -> np.ndarray:
        return self._mask.copy()

    @property
    def is_empty(self) -> bool:
        return not bool(self._mask.any())

    @property
    def in_stroke(self) -> bool:
        return self._last is not None

    def coverage(self) -> float:
        return float(self._mask.mean())

    def clear(self) -> None:
        self._mask[...] = False
        self._last = None

    def begin_stroke(self, point: Tuple[float, float], radius: float, mode: str = MODE_ADD) -> None:
        self._last = None
        self.paint(point, radius, mode)

    def paint(self, point: Tuple[float, float], radius: float, mode: str = MODE_ADD) -> None:
        if mode not in _MODES:
            raise ValueError(f"unknown mask mode {mode!r}")
        r = float(radius)
        if r <= 0:
            raise ValueError("brush radius must be positive")

        px, py = float(point[0]), float(point[1])
        value = mode == MODE_ADD
        if self._last is None:
            self._stamp(px, py, r, value)
        else:
            lx, ly = self._last
            dist = math.hypot(px - lx, py - ly)
            step = max(1.0, r / 4.0)
            n = max(1, int(math.ceil(dist / step)))
            for i in range(1, n + 1):
                t = i / n
                self._stamp(lx + (px - lx) * t, ly + (py - ly) * t, r, value)
        self._last = (px, py)

    def end_stroke(self) -> None:
        self._last = None

    def _stamp(self, cx: float, cy: float, r: float, value: bool) -> None:
        x0 = max(0, int(math.floor(cx - r)))
        y0 = max(0, int(math.floor(cy - r)))
        x1 = min(self._w, int(math.ceil(cx + r)) + 1)
        y1 = min(self._h, int(math.ceil(cy + r)) + 1)
        if x1 <= x0 or y1 <= y0:
            return
        yy, xx = np.ogrid[y0:y1, x0:x1]
        disc = (xx - cx) ** 2 + (yy - cy) ** 2 <= r * r
        region = self._mask[y0:y1, x0:x1]
        region[disc] = value

    def to_rgba(self) -> np.ndarray:
        out = np.zeros((self._h, self._w, 4), dtype=np.uint8)
        out[self._mask] = _INK
        return out

    def export(self) -> bytes:
        buf = io.BytesIO()
        Image.fromarray(self.to_rgba()).save(buf, format="PNG")
        return buf.getvalue()

    def export_raster(self) -> Raster:
        return Raster(self.export(), self._w, self._h, "image/png")

    def load(self, png_bytes: bytes) -> None:
        """Seed the buffer from a previously exported mask."""
        arr = Raster.from_bytes(png_bytes).to_array()
        h, w = arr.shape[:2]
        if (w, h) != (self._w, self._h):
            raise InputError(f"mask is {w}x{h}, expected {self._w}x{self._h}")
        self._mask = arr[..., 3] >= 128
        self._last = None
