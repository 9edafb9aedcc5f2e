from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Optional

from core.raster import Raster


def load_raster_bytes(data: bytes, mime_type: Optional[str] = None) -> Raster:
    """Fully decode once so a truncated upload is rejected before it enters history."""
    return Raster.from_bytes(data, mime_type=mime_type, verify=True)


def load_raster(path: str) -> Raster:
    p = Path(path)
    mime, _ = mimetypes.guess_type(p.name)
    return load_raster_bytes(p.read_bytes(), mime)


def save_bytes(path: str, data: bytes) -> None:
    Path(path).write_bytes(data)
