from __future__ import annotations

import io
import logging
from dataclasses import dataclass

from PIL import Image, ImageDraw, ImageFont

from core.errors import InputError
from core.raster import Raster


logger = logging.getLogger(__name__)

DEFAULT_WATERMARK = "Made with Overlay Studio"
_MIME = {"png": "image/png", "jpeg": "image/jpeg"}


@dataclass(frozen=True)
class ExportOptions:
    format: str = "png"
    quality: int = 92
    add_watermark: bool = False
    upscale: bool = False

    def __post_init__(self) -> None:
        fmt = str(self.format).lower()
        if fmt == "jpg":
            fmt = "jpeg"
        if fmt not in _MIME:
            raise InputError(f"unsupported export format {self.format!r}")
        object.__setattr__(self, "format", fmt)
        try:
            quality = int(self.quality)
        except (TypeError, ValueError) as e:
            raise InputError(f"quality must be a whole number, got {self.quality!r}") from e
        if not 1 <= quality <= 100:
            raise InputError(f"quality must be between 1 and 100, got {self.quality}")
        object.__setattr__(self, "quality", quality)


@dataclass(frozen=True)
class ExportResult:
    data: bytes
    mime_type: str
    filename: str


def _caption_font(size: int) -> ImageFont.ImageFont:
    for name in ("DejaVuSans-Bold.ttf", "Arial Bold.ttf", "arialbd.ttf"):
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def draw_watermark(img: Image.Image, text: str = DEFAULT_WATERMARK) -> Image.Image:
    """Semi-transparent caption anchored 10px from the bottom-right corner."""
    out = img.convert("RGBA")
    size = max(16, int(round(out.width / 80)))
    overlay = Image.new("RGBA", out.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    font = _caption_font(size)
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    x = out.width - 10 - right
    y = out.height - 10 - bottom
    draw.text((x, y), text, font=font, fill=(255, 255, 255, 128))
    return Image.alpha_composite(out, overlay)


def encode(img: Image.Image, options: ExportOptions) -> bytes:
    buf = io.BytesIO()
    if options.format == "jpeg":
        # JPG has no alpha, so flatten onto white.
        rgba = img.convert("RGBA")
        flat = Image.new("RGB", rgba.size, (255, 255, 255))
        flat.paste(rgba, mask=rgba.split()[3])
        flat.save(buf, format="JPEG", quality=int(options.quality))
    else:
        img.convert("RGBA").save(buf, format="PNG")
    return buf.getvalue()


def render_export(raster: Raster, options: ExportOptions, watermark_text: str = DEFAULT_WATERMARK) -> ExportResult:
    img = raster.decode()
    if options.add_watermark:
        img = draw_watermark(img, watermark_text)
    data = encode(img, options)
    logger.info("encoded %dx%d export as %s (%d bytes)", img.width, img.height, options.format, len(data))
    return ExportResult(
        data=data,
        mime_type=_MIME[options.format],
        filename=f"overlay-studio-edit.{options.format}",
    )
