from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping, Optional


logger = logging.getLogger(__name__)

CONFIG_FILE = "overlay_studio.json"


@dataclass
class StudioConfig:
    api_key: Optional[str] = None
    image_model: str = "gemini-2.5-flash-image-preview"
    text_model: str = "gemini-2.5-flash"
    request_timeout: float = 90.0
    brush_radius: int = 15
    device_pixel_ratio: float = 1.0
    watermark_text: str = "Made with Overlay Studio"


_ENV_KEYS = {
    "image_model": "OVERLAY_STUDIO_IMAGE_MODEL",
    "text_model": "OVERLAY_STUDIO_TEXT_MODEL",
    "request_timeout": "OVERLAY_STUDIO_TIMEOUT",
}


def _coerce(name: str, raw, default):
    if default is None:
        return None if raw is None else str(raw)
    try:
        if isinstance(default, bool):
            return bool(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        return str(raw)
    except (TypeError, ValueError):
        logger.warning("ignoring invalid config value %s=%r", name, raw)
        return default


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> StudioConfig:
    """Defaults, then the optional JSON file, then environment variables."""
    env = os.environ if env is None else env
    cfg = StudioConfig()
    defaults = {f.name: getattr(cfg, f.name) for f in fields(cfg)}

    config_path = Path(path) if path else None
    if config_path is not None and config_path.exists():
        try:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning("could not parse %s: %s", config_path, e)
            raw = {}
        if isinstance(raw, dict):
            for name, value in raw.items():
                if name in defaults:
                    setattr(cfg, name, _coerce(name, value, defaults[name]))

    api_key = env.get("GEMINI_API_KEY") or env.get("API_KEY")
    if api_key:
        cfg.api_key = api_key
    for name, key in _ENV_KEYS.items():
        if env.get(key):
            setattr(cfg, name, _coerce(name, env[key], defaults[name]))
    return cfg
