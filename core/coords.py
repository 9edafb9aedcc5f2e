from __future__ import annotations

import math
from typing import Tuple

from core.errors import CoordinateError


Point = Tuple[float, float]
Size = Tuple[float, float]
Rect = Tuple[float, float, float, float]


def _round_half_up(v: float) -> int:
    return int(math.floor(v + 0.5))


def _scale(displayed_size: Size, native_size: Size) -> Tuple[float, float]:
    dw, dh = float(displayed_size[0]), float(displayed_size[1])
    nw, nh = float(native_size[0]), float(native_size[1])
    if dw <= 0 or dh <= 0:
        raise CoordinateError(f"displayed size {dw:g}x{dh:g} has a zero dimension")
    if nw <= 0 or nh <= 0:
        raise CoordinateError(f"native size {nw:g}x{nh:g} has a zero dimension")
    return nw / dw, nh / dh


class CoordinateMapper:
    """
    Maps between on-screen (display) coordinates and native image pixels.

    Holds no view state: the caller passes the display rectangle it measured
    for this event, so zoom and resize never leave a stale scale behind.
    """

    @staticmethod
    def to_native(point: Point, displayed_size: Size, native_size: Size) -> Tuple[int, int]:
        sx, sy = _scale(displayed_size, native_size)
        return (_round_half_up(point[0] * sx), _round_half_up(point[1] * sy))

    @staticmethod
    def to_display(point: Point, displayed_size: Size, native_size: Size) -> Tuple[float, float]:
        sx, sy = _scale(displayed_size, native_size)
        return (point[0] / sx, point[1] / sy)

    @staticmethod
    def rect_to_native(rect: Rect, displayed_size: Size, native_size: Size) -> Rect:
        sx, sy = _scale(displayed_size, native_size)
        x, y, w, h = rect
        return (x * sx, y * sy, w * sx, h * sy)

    @staticmethod
    def clamp_to_native(point: Tuple[int, int], native_size: Tuple[int, int]) -> Tuple[int, int]:
        nw, nh = native_size
        x = max(0, min(int(nw) - 1, int(point[0])))
        y = max(0, min(int(nh) - 1, int(point[1])))
        return (x, y)
