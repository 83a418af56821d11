"""
Image Watermark service
Python/Flask backend using Pillow to draw text onto uploaded images.

Endpoints:
  GET  /               – Landing page.
  GET  /img-watermark  – Upload form.
  POST /img-watermark  – Accept an image + text/position/size, return an
                         HTML page with the watermarked JPEG inlined.
"""

import base64
from logging.config import dictConfig

from flask import Flask, render_template, request
from flask_cors import CORS
from waitress import serve
from werkzeug.exceptions import RequestEntityTooLarge

import config
from watermark import (
    PayloadTooLarge,
    WatermarkError,
    WatermarkFont,
    parse_form,
    watermark_image,
)

dictConfig({
    "version": 1,
    "formatters": {"default": {
        "format": "[%(asctime)s] %(levelname)s in %(module)s: %(message)s",
    }},
    "handlers": {"wsgi": {
        "class": "logging.StreamHandler",
        "stream": "ext://flask.logging.wsgi_errors_stream",
        "formatter": "default",
    }},
    "root": {"level": config.LOG_LEVEL, "handlers": ["wsgi"]},
})

app = Flask(__name__)
CORS(app, origins=config.CORS_ORIGINS)

# Maximum allowed upload size (250 MB by default)
app.config["MAX_CONTENT_LENGTH"] = config.MAX_CONTENT_LENGTH
app.config["MAX_FORM_MEMORY_SIZE"] = config.MAX_FORM_MEMORY_SIZE
app.config["WATERMARK_MAX_PIXELS"] = config.MAX_PIXELS
app.config["WATERMARK_MAX_FONT_SIZE"] = config.MAX_FONT_SIZE
app.config["WATERMARK_MAX_TEXT_LENGTH"] = config.MAX_TEXT_LENGTH
app.config["WATERMARK_COLOR"] = config.COLOR
app.config["WATERMARK_DEFAULT_TEXT"] = config.DEFAULT_TEXT
app.config["WATERMARK_JPEG_QUALITY"] = config.JPEG_QUALITY

SCALE_CHOICES = (14, 16, 18, 20, 22, 24)

# Loaded once; a broken font file stops the import and so the server.
FONT = WatermarkFont.from_path(config.FONT_PATH)


@app.route("/", methods=["GET"])
def hello_world():
    return "<h1>Hello, World!</h1>"


@app.route("/img-watermark", methods=["GET"])
def show_form():
    return render_template(
        "form.html",
        scales=SCALE_CHOICES,
        default_scale=18,
        default_text=app.config["WATERMARK_DEFAULT_TEXT"],
    )


@app.route("/img-watermark", methods=["POST"])
def watermark_upload():
    """Parse the multipart form, draw the watermark and inline the JPEG
    as a base64 data-URI in the result page."""

    # --- Parse & validate fields ---------------------------------------------
    wm_request = parse_form(
        request.form,
        request.files,
        default_text=app.config["WATERMARK_DEFAULT_TEXT"],
        max_font_size=app.config["WATERMARK_MAX_FONT_SIZE"],
        max_text_length=app.config["WATERMARK_MAX_TEXT_LENGTH"],
    )
    app.logger.debug("watermark request: %r", wm_request)

    # --- Decode, draw, encode ------------------------------------------------
    jpeg = watermark_image(
        wm_request,
        FONT,
        color=app.config["WATERMARK_COLOR"],
        max_pixels=app.config["WATERMARK_MAX_PIXELS"],
        quality=app.config["WATERMARK_JPEG_QUALITY"],
    )

    encoded = base64.b64encode(jpeg).decode("ascii")
    return render_template("result.html", image_data=encoded)


@app.errorhandler(RequestEntityTooLarge)
def payload_too_large(exc):
    # Raised for the whole body (MAX_CONTENT_LENGTH) and for any single
    # text field (MAX_FORM_MEMORY_SIZE).
    limit_mb = (app.config["MAX_CONTENT_LENGTH"] or 0) / (1024 * 1024)
    form_kb = (app.config.get("MAX_FORM_MEMORY_SIZE") or 0) / 1024
    return handle_watermark_error(PayloadTooLarge(
        f"request is too large: uploads are limited to {limit_mb:g} MB"
        f" and text fields to {form_kb:g} KB"
    ))


@app.errorhandler(WatermarkError)
def handle_watermark_error(exc):
    if exc.status_code >= 500:
        app.logger.error("watermarking failed: %s", exc.message, exc_info=exc)
        message = "Internal error while processing the image"
    else:
        app.logger.info("rejected upload (%d): %s", exc.status_code, exc.message)
        message = exc.message
    return render_template("error.html", message=message), exc.status_code


def main():
    app.logger.info("listening on %s:%d", config.HOST, config.PORT)
    serve(
        app,
        host=config.HOST,
        port=config.PORT,
        threads=config.THREADS,
        channel_timeout=config.CHANNEL_TIMEOUT,
        max_request_body_size=config.MAX_CONTENT_LENGTH,
    )


if __name__ == "__main__":
    main()
