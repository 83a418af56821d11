"""
Watermark pipeline.

Turns a submitted upload form into a JPEG with the requested text drawn on
it. The steps are kept as separate functions so the HTTP layer (and the
tests) can drive them individually:

    parse_form      -> WatermarkRequest   (field extraction + validation)
    decode_image    -> PIL image          (format sniffed from the bytes)
    draw_watermark  -> PIL image          (text overlay, in place)
    encode_jpeg     -> bytes

Every failure raises a subclass of ``WatermarkError`` carrying the HTTP
status the error page should be served with.
"""

import functools
import io
import logging
import math
import os
from dataclasses import dataclass

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

logger = logging.getLogger(__name__)

DEFAULT_TEXT = "Blue Bird"
DEFAULT_COLOR = (0, 0, 0)
DEFAULT_MAX_PIXELS = 50_000_000
DEFAULT_MAX_FONT_SIZE = 512
DEFAULT_MAX_TEXT_LENGTH = 256
DEFAULT_QUALITY = 90

# FreeType cannot rasterize below one pixel per em.
MIN_FONT_SIZE = 1

# Pillow draws at C int coordinates; posx/posy above this are rejected.
MAX_POSITION = 1 << 30


# ── Errors ────────────────────────────────────────────────────────────────────

class WatermarkError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(WatermarkError):
    """A form field is missing or does not parse."""

    status_code = 400

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class DecodeError(WatermarkError):
    """The upload is not an image Pillow can decode."""

    status_code = 415

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PayloadTooLarge(WatermarkError):
    status_code = 413


class EncodeError(WatermarkError):
    status_code = 500


class RenderError(WatermarkError):
    """Drawing the text failed inside Pillow."""

    status_code = 500


class FontLoadError(WatermarkError):
    """The bundled font could not be read. Fatal at startup."""


# ── Request model ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WatermarkRequest:
    image_bytes: bytes
    font_scale: float
    text: str
    pos_x: int
    pos_y: int

    def __repr__(self):
        return (
            f"WatermarkRequest(image_bytes=<{len(self.image_bytes)} bytes>, "
            f"font_scale={self.font_scale}, text={self.text!r}, "
            f"pos_x={self.pos_x}, pos_y={self.pos_y})"
        )


def _required(form, field: str) -> str:
    raw = form.get(field)
    if raw is None or raw.strip() == "":
        raise ValidationError(field, f"missing {field} value")
    return raw.strip()


def _parse_scale(form, max_font_size: float) -> float:
    raw = _required(form, "scale")
    try:
        scale = float(raw)
    except ValueError:
        raise ValidationError("scale", f"invalid scale number {raw!r}") from None
    if not math.isfinite(scale) or scale <= 0:
        raise ValidationError("scale", f"invalid scale number {raw!r}, only positive number")
    if scale < MIN_FONT_SIZE:
        raise ValidationError("scale", f"scale {raw} is smaller than the minimum of {MIN_FONT_SIZE}")
    if scale > max_font_size:
        raise ValidationError("scale", f"scale {raw} is larger than the maximum of {max_font_size}")
    return scale


def _parse_position(form, field: str) -> int:
    raw = _required(form, field)
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(
            field, f"invalid {field} number {raw!r}, only positive number"
        ) from None
    if value < 0:
        raise ValidationError(field, f"invalid {field} number {raw!r}, only positive number")
    if value > MAX_POSITION:
        raise ValidationError(field, f"{field} {raw} is out of range")
    return value


def _read_upload(files) -> bytes:
    # Only real file parts count; a filename-less "file" part is text to
    # werkzeug and already decoded, so it is treated as missing.
    upload = files.get("file")
    if upload is None:
        return b""
    return upload.read()


def _parse_text(form, default_text: str, max_text_length: int) -> str:
    text = form.get("text")
    if text is None or text.strip() == "":
        return default_text
    if len(text) > max_text_length:
        raise ValidationError(
            "text", f"text is {len(text)} characters, more than the maximum of {max_text_length}"
        )
    return text


def parse_form(form, files, default_text: str = DEFAULT_TEXT,
               max_font_size: float = DEFAULT_MAX_FONT_SIZE,
               max_text_length: int = DEFAULT_MAX_TEXT_LENGTH) -> WatermarkRequest:
    """Build a ``WatermarkRequest`` from multipart form data.

    ``form`` and ``files`` are the mapping-like objects a WSGI framework
    exposes for the text parts and the file parts of the body. Unknown
    fields are ignored. ``scale``, ``posx`` and ``posy`` are required; a
    missing or blank ``text`` falls back to ``default_text`` and a missing
    ``file`` to empty bytes, which fail later in ``decode_image``.

    Raises:
        ValidationError: naming the first field that is missing or invalid.
    """
    logger.debug("form fields: %s, file fields: %s", list(form.keys()), list(files.keys()))

    scale = _parse_scale(form, max_font_size)
    pos_x = _parse_position(form, "posx")
    pos_y = _parse_position(form, "posy")
    text = _parse_text(form, default_text, max_text_length)

    image_bytes = _read_upload(files)
    logger.debug("length of file is %d bytes", len(image_bytes))

    return WatermarkRequest(
        image_bytes=image_bytes,
        font_scale=scale,
        text=text,
        pos_x=pos_x,
        pos_y=pos_y,
    )


# ── Font ──────────────────────────────────────────────────────────────────────

class WatermarkFont:
    """A TrueType font held in memory, with cached sized variants.

    The font file is read and parsed once. ``sized(n)`` returns a shared
    ``FreeTypeFont`` for pixel size ``n``; variants are only ever read, so
    handing the same object to concurrent requests is fine.
    """

    def __init__(self, data: bytes, name: str = "<memory>"):
        self.name = name
        self._data = data
        try:
            ImageFont.truetype(io.BytesIO(data), size=12)
        except (OSError, ValueError) as exc:
            raise FontLoadError(f"cannot parse font {name}: {exc}") from exc
        self.sized = functools.lru_cache(maxsize=32)(self._build)

    @classmethod
    def from_path(cls, path: str) -> "WatermarkFont":
        try:
            with open(path, "rb") as fh:
                data = fh.read()
        except OSError as exc:
            raise FontLoadError(f"cannot read font file {path}: {exc}") from exc
        return cls(data, name=os.path.basename(path))

    def _build(self, size: float) -> ImageFont.FreeTypeFont:
        return ImageFont.truetype(io.BytesIO(self._data), size=size)


# ── Pipeline steps ────────────────────────────────────────────────────────────

def decode_image(data: bytes, max_pixels: int = DEFAULT_MAX_PIXELS) -> Image.Image:
    """Decode ``data`` into an RGB image.

    The container format is detected from the bytes themselves. The
    declared dimensions are checked against ``max_pixels`` before any
    pixel data is decompressed.
    """
    if not data:
        raise DecodeError("no image was uploaded")
    try:
        image = Image.open(io.BytesIO(data))
    except UnidentifiedImageError:
        raise DecodeError("image type is not supported") from None
    except (Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"image cannot be read: {exc}") from exc

    width, height = image.size
    logger.debug("format guessed: %s, %dx%d %s", image.format, width, height, image.mode)
    if width * height > max_pixels:
        raise DecodeError(
            f"image is {width}x{height} pixels, more than the {max_pixels} pixel limit"
        )

    try:
        image.load()
        if image.mode != "RGB":
            image = image.convert("RGB")
    except (Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"image data is corrupt or truncated: {exc}") from exc
    return image


def draw_watermark(image: Image.Image, request: WatermarkRequest, font: WatermarkFont,
                   color=DEFAULT_COLOR, max_pixels: int = DEFAULT_MAX_PIXELS) -> Image.Image:
    """Draw ``request.text`` onto ``image`` in place.

    Pillow rasterizes the whole text into one mask before clipping it to
    the image, so the text's bounding box is held to the same pixel limit
    as decoded images.
    """
    origin = (request.pos_x, request.pos_y)
    try:
        sized = font.sized(request.font_scale)
        draw = ImageDraw.Draw(image)
        left, top, right, bottom = draw.textbbox(origin, request.text, font=sized)
        if (right - left) * (bottom - top) > max_pixels:
            raise ValidationError(
                "text", "watermark text is too large to render at this scale"
            )
        draw.text(origin, request.text, font=sized, fill=color)
    except Image.DecompressionBombError:
        raise ValidationError(
            "text", "watermark text is too large to render at this scale"
        ) from None
    except (OSError, ValueError) as exc:
        raise RenderError(f"drawing text failed: {exc}") from exc
    return image


def encode_jpeg(image: Image.Image, quality: int = DEFAULT_QUALITY) -> bytes:
    buf = io.BytesIO()
    try:
        image.save(buf, format="JPEG", quality=quality)
    except (OSError, ValueError) as exc:
        raise EncodeError(f"writing JPEG failed: {exc}") from exc
    return buf.getvalue()


def watermark_image(request: WatermarkRequest, font: WatermarkFont, color=DEFAULT_COLOR,
                    max_pixels: int = DEFAULT_MAX_PIXELS,
                    quality: int = DEFAULT_QUALITY) -> bytes:
    """Decode, draw and re-encode. Returns the JPEG bytes."""
    image = decode_image(request.image_bytes, max_pixels=max_pixels)
    draw_watermark(image, request, font, color=color, max_pixels=max_pixels)
    return encode_jpeg(image, quality=quality)
