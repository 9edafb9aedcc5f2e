from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from core.coords import CoordinateMapper, Rect, Size
from core.errors import DecodeError, InputError
from core.layers import Layer
from core.raster import Raster, np_rgba_to_pil


logger = logging.getLogger(__name__)


def _blend(base: np.ndarray, top: np.ndarray) -> np.ndarray:
    """Source-over: `top` drawn onto `base`, both straight-alpha RGBA uint8."""
    base_rgb = base[..., :3].astype(np.float32) / 255.0
    top_rgb = top[..., :3].astype(np.float32) / 255.0
    base_a = base[..., 3:4].astype(np.float32) / 255.0
    top_a = top[..., 3:4].astype(np.float32) / 255.0

    out_a = top_a + base_a * (1.0 - top_a)
    premul_top = top_rgb * top_a
    premul_base = base_rgb * base_a
    out_premul = premul_top + premul_base * (1.0 - top_a)
    out_rgb = np.where(out_a > 0, out_premul / np.maximum(out_a, 1e-6), 0.0)

    out = np.empty_like(base)
    out[..., :3] = np.clip(np.round(out_rgb * 255.0), 0, 255).astype(np.uint8)
    out[..., 3] = np.clip(np.round(out_a[..., 0] * 255.0), 0, 255).astype(np.uint8)
    return out


def _decode_layer(layer: Layer, index: int, size: Tuple[int, int]) -> np.ndarray:
    try:
        img = layer.raster.decode()
    except DecodeError as e:
        raise DecodeError(f"layer {index + 1} ({layer.id}) is unreadable: {e.message}") from e
    if img.size != size:
        # Layers come back from the service at the base resolution, give or take rounding.
        logger.debug("resampling layer %s from %s to %s", layer.id, img.size, size)
        img = img.resize(size, resample=Image.Resampling.LANCZOS)
    return np.array(img, dtype=np.uint8)


def flatten_to_image(base: Raster, layers: Iterable[Layer]) -> Image.Image:
    base_img = base.decode()
    layers = list(layers)
    if not layers:
        return base_img

    canvas = np.array(base_img, dtype=np.uint8)
    size = base_img.size
    # Decode everything first so a bad layer aborts before any blending work.
    tops = [_decode_layer(layer, i, size) for i, layer in enumerate(layers)]
    for top in tops:
        canvas = _blend(canvas, top)
    return np_rgba_to_pil(canvas)


def flatten(base: Raster, layers: Sequence[Layer] = ()) -> Raster:
    """Collapse base + ordered layers into one PNG raster at the base's native size."""
    return Raster.from_image(flatten_to_image(base, layers))


def _clamped_box(native_rect: Rect, native_size: Tuple[int, int]) -> Optional[Tuple[float, float, float, float]]:
    x, y, w, h = native_rect
    nw, nh = native_size
    x0 = max(0.0, float(x))
    y0 = max(0.0, float(y))
    x1 = min(float(nw), float(x + w))
    y1 = min(float(nh), float(y + h))
    if x1 <= x0 or y1 <= y0:
        return None
    return (x0, y0, x1, y1)


def apply_crop(
    base: Raster,
    layers: Sequence[Layer],
    region: Rect,
    displayed_size: Size,
    native_size: Optional[Tuple[int, int]] = None,
    pixel_ratio: float = 1.0,
) -> Raster:
    """
    Flatten, then cut out `region` (display coordinates).

    The output is sized to the region's display size times `pixel_ratio`, so
    a crop taken on a high-density screen keeps its sharpness. The result is a
    new base image; callers push it with no layers.
    """
    native_size = native_size or base.size
    if region[2] <= 0 or region[3] <= 0:
        raise InputError("Please select an area to crop.")

    native_rect = CoordinateMapper.rect_to_native(region, displayed_size, native_size)
    box = _clamped_box(native_rect, native_size)
    if box is None:
        raise InputError(f"crop region {region} lies outside the image")

    ratio = max(float(pixel_ratio), 1e-3)
    out_w = max(1, int(round(region[2] * ratio)))
    out_h = max(1, int(round(region[3] * ratio)))

    flat = flatten_to_image(base, layers)
    cropped = flat.resize((out_w, out_h), resample=Image.Resampling.LANCZOS, box=box)
    return Raster.from_image(cropped)
