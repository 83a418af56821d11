"""
Tests for the Image Watermark Flask app.
"""

import base64
import io
import re

import pytest
from PIL import Image

import watermark
from app import app


@pytest.fixture
def client():
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


def _make_image_bytes(width=100, height=100, color=(255, 255, 255), fmt="PNG", mode="RGB"):
    """Return raw bytes of a single-color image."""
    if mode == "RGBA":
        color = color + (255,)
    img = Image.new(mode, (width, height), color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def _form(file_bytes=None, filename="test.png", **fields):
    data = {"scale": "18", "posx": "10", "posy": "10", "text": "Blue Bird"}
    data.update(fields)
    data = {k: v for k, v in data.items() if v is not None}
    if file_bytes is not None:
        data["file"] = (io.BytesIO(file_bytes), filename)
    return data


def _post(client, data):
    return client.post("/img-watermark", data=data, content_type="multipart/form-data")


def _output_image(resp):
    match = re.search(rb'src="data:image/jpg;base64,([^"]+)"', resp.data)
    assert match, "response does not inline a base64 image"
    raw = base64.b64decode(match.group(1))
    return raw, Image.open(io.BytesIO(raw))


# ── Static pages ──────────────────────────────────────────────────────────────

def test_hello_world(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.data == b"<h1>Hello, World!</h1>"


def test_form_lists_all_fields(client):
    resp = client.get("/img-watermark")
    assert resp.status_code == 200
    body = resp.get_data(as_text=True)
    assert 'enctype="multipart/form-data"' in body
    for name in ("file", "scale", "posx", "posy", "text"):
        assert f'name="{name}"' in body
    for size in (14, 16, 18, 20, 22, 24):
        assert f'value="{size}"' in body


def test_cors_header_present(client):
    resp = client.get("/", headers={"Origin": "http://example.com"})
    assert resp.headers.get("Access-Control-Allow-Origin") == "*"


# ── POST /img-watermark – successful processing ──────────────────────────────

def test_watermark_returns_inline_jpeg(client):
    resp = _post(client, _form(_make_image_bytes()))
    assert resp.status_code == 200
    raw, out_img = _output_image(resp)
    assert raw
    assert out_img.format == "JPEG"
    assert out_img.size == (100, 100)


def test_watermark_draws_text_near_position(client):
    resp = _post(client, _form(_make_image_bytes(), scale="18", posx="10", posy="10"))
    assert resp.status_code == 200
    _, out_img = _output_image(resp)
    gray = out_img.convert("L")
    text_region = gray.crop((10, 10, 90, 40))
    untouched = gray.crop((0, 60, 100, 100))
    assert min(text_region.getdata()) < 128, "expected dark glyph pixels near (10, 10)"
    assert min(untouched.getdata()) > 230, "background away from the text should be unchanged"


def test_watermark_jpeg_upload(client):
    img_bytes = _make_image_bytes(width=64, height=48, fmt="JPEG")
    resp = _post(client, _form(img_bytes, filename="photo.jpg"))
    assert resp.status_code == 200
    _, out_img = _output_image(resp)
    assert out_img.size == (64, 48)


def test_watermark_rgba_png_upload(client):
    img_bytes = _make_image_bytes(mode="RGBA")
    resp = _post(client, _form(img_bytes))
    assert resp.status_code == 200
    _, out_img = _output_image(resp)
    assert out_img.mode == "RGB"


def test_format_sniffed_from_content_not_filename(client):
    """A PNG uploaded under a misleading name is still decoded."""
    resp = _post(client, _form(_make_image_bytes(), filename="notes.txt"))
    assert resp.status_code == 200


def test_position_outside_image_is_accepted(client):
    resp = _post(client, _form(_make_image_bytes(), posx="5000", posy="5000"))
    assert resp.status_code == 200
    _, out_img = _output_image(resp)
    assert min(out_img.convert("L").getdata()) > 230


def test_same_input_gives_identical_output(client):
    img_bytes = _make_image_bytes()
    first, _ = _output_image(_post(client, _form(img_bytes)))
    second, _ = _output_image(_post(client, _form(img_bytes)))
    assert first == second


# ── POST /img-watermark – invalid input ──────────────────────────────────────

def test_non_numeric_posx_names_field(client):
    resp = _post(client, _form(_make_image_bytes(), posx="abc"))
    assert resp.status_code == 400
    assert b"posx" in resp.data


@pytest.mark.parametrize("field", ["scale", "posx", "posy"])
def test_missing_numeric_field_is_rejected(client, field):
    resp = _post(client, _form(_make_image_bytes(), **{field: None}))
    assert resp.status_code == 400
    assert field.encode() in resp.data


def test_validation_error_never_decodes(client, monkeypatch):
    calls = []
    monkeypatch.setattr(watermark, "decode_image", lambda *a, **kw: calls.append(a))
    resp = _post(client, _form(_make_image_bytes(), scale="big"))
    assert resp.status_code == 400
    assert b"scale" in resp.data
    assert calls == []


def test_error_message_is_escaped(client):
    resp = _post(client, _form(_make_image_bytes(), posy="<b>"))
    assert resp.status_code == 400
    assert b"<b>" not in resp.data
    assert b"&lt;b&gt;" in resp.data


def test_missing_file_is_decode_error(client):
    resp = _post(client, _form())
    assert resp.status_code == 415
    assert b"<h1>" in resp.data


def test_non_image_file_is_decode_error(client):
    resp = _post(client, _form(b"not an image", filename="file.png"))
    assert resp.status_code == 415
    assert b"not supported" in resp.data


def test_payload_too_large(client, monkeypatch):
    monkeypatch.setitem(app.config, "MAX_CONTENT_LENGTH", 1024)
    big = _make_image_bytes(width=300, height=300, color=(1, 2, 3), fmt="BMP")
    resp = _post(client, _form(big))
    assert resp.status_code == 413
    assert b"limit" in resp.data


def test_oversized_text_field_is_413_without_upload_wording(client, monkeypatch):
    monkeypatch.setitem(app.config, "MAX_FORM_MEMORY_SIZE", 100)
    resp = _post(client, _form(_make_image_bytes(), text="x" * 200))
    assert resp.status_code == 413
    assert b"text fields" in resp.data


def test_tiny_scale_is_validation_error(client):
    resp = _post(client, _form(_make_image_bytes(), scale="0.001"))
    assert resp.status_code == 400
    assert b"scale" in resp.data


def test_overlong_text_is_validation_error(client):
    resp = _post(client, _form(_make_image_bytes(), scale="512", text="W" * 20000))
    assert resp.status_code == 400
    assert b"text" in resp.data
    assert b"Internal Server Error" not in resp.data


def test_blank_text_uses_default(client, monkeypatch):
    seen = []
    original = watermark.draw_watermark

    def spy(image, request, font, **kwargs):
        seen.append(request.text)
        return original(image, request, font, **kwargs)

    monkeypatch.setattr(watermark, "draw_watermark", spy)
    resp = _post(client, _form(_make_image_bytes(), text=""))
    assert resp.status_code == 200
    assert seen == [app.config["WATERMARK_DEFAULT_TEXT"]]


def test_file_part_without_filename_is_decode_error(client):
    data = _form()
    data["file"] = "\x89PNG not really"
    resp = _post(client, data)
    assert resp.status_code == 415
    assert b"no image was uploaded" in resp.data


def test_image_over_pixel_limit(client, monkeypatch):
    monkeypatch.setitem(app.config, "WATERMARK_MAX_PIXELS", 50 * 50)
    resp = _post(client, _form(_make_image_bytes(width=60, height=60)))
    assert resp.status_code == 415
    assert b"pixel limit" in resp.data


def test_encode_failure_is_generic_500(client, monkeypatch):
    def broken(image, quality=90):
        raise watermark.EncodeError("encoder exploded")

    monkeypatch.setattr(watermark, "encode_jpeg", broken)
    resp = _post(client, _form(_make_image_bytes()))
    assert resp.status_code == 500
    assert b"Internal error" in resp.data
    assert b"exploded" not in resp.data
