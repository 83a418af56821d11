"""
Configuration for the image watermark service.

Values come from environment variables, optionally loaded from a ``.env``
file in the working directory. Everything is resolved once at import time.
"""

import logging
import os

from dotenv import load_dotenv
from PIL import ImageColor

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value."""


def _int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _color(name: str, default: str) -> tuple:
    raw = os.getenv(name) or default
    try:
        return ImageColor.getrgb(raw)
    except ValueError:
        raise ConfigError(f"{name} is not a recognised color: {raw!r}") from None


# ========== Server ==========
HOST = os.getenv("WATERMARK_HOST", "0.0.0.0")
PORT = _int("WATERMARK_PORT", 8080)
THREADS = _int("WATERMARK_THREADS", 4)
CHANNEL_TIMEOUT = _int("WATERMARK_CHANNEL_TIMEOUT", 120)  # seconds
CORS_ORIGINS = os.getenv("WATERMARK_CORS_ORIGINS", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
if not isinstance(logging.getLevelName(LOG_LEVEL), int):
    raise ConfigError(f"LOG_LEVEL is not a logging level: {LOG_LEVEL!r}")

# ========== Limits ==========
MAX_UPLOAD_MB = _int("WATERMARK_MAX_UPLOAD_MB", 250)
MAX_CONTENT_LENGTH = MAX_UPLOAD_MB * 1024 * 1024
MAX_PIXELS = _int("WATERMARK_MAX_PIXELS", 50_000_000)
MAX_FONT_SIZE = _int("WATERMARK_MAX_FONT_SIZE", 512)
MAX_TEXT_LENGTH = _int("WATERMARK_MAX_TEXT_LENGTH", 256)
# Limit for non-file form parts (scale, posx, posy, text)
MAX_FORM_KB = _int("WATERMARK_MAX_FORM_KB", 64)
MAX_FORM_MEMORY_SIZE = MAX_FORM_KB * 1024

# ========== Rendering ==========
FONT_PATH = os.getenv(
    "WATERMARK_FONT_PATH", os.path.join(BASE_DIR, "fonts", "Lato-Regular.ttf")
)
COLOR = _color("WATERMARK_COLOR", "#000000")
DEFAULT_TEXT = os.getenv("WATERMARK_DEFAULT_TEXT", "Blue Bird")
JPEG_QUALITY = _int("WATERMARK_JPEG_QUALITY", 90)
if JPEG_QUALITY > 95:
    raise ConfigError(f"WATERMARK_JPEG_QUALITY must be <= 95, got {JPEG_QUALITY}")
