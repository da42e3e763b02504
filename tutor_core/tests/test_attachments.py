import base64
import io

import pytest
from PIL import Image

from tutor_core.domain.exceptions import ValidationError
from tutor_core.inputs.attachments import image_bytes_to_data_uri, load_image_attachment


def _png_bytes(size=(4, 4)):
    buf = io.BytesIO()
    Image.new("RGB", size, color=(255, 0, 0)).save(buf, format="PNG")
    return buf.getvalue()


def test_png_becomes_data_uri():
    data = _png_bytes()
    uri = image_bytes_to_data_uri(data)
    assert uri.startswith("data:image/png;base64,")
    assert base64.b64decode(uri.split(",", 1)[1]) == data


def test_too_large_image_is_rejected():
    data = _png_bytes()
    with pytest.raises(ValidationError) as exc_info:
        image_bytes_to_data_uri(data, max_bytes=len(data) - 1)
    assert exc_info.value.code == "IMAGE_TOO_LARGE"
    assert exc_info.value.message == "File too large. Please select an image under 5MB."


def test_invalid_bytes_are_rejected():
    with pytest.raises(ValidationError) as exc_info:
        image_bytes_to_data_uri(b"definitely not an image")
    assert exc_info.value.code == "INVALID_IMAGE"


def test_load_image_attachment_from_file(tmp_path):
    path = tmp_path / "homework.jpg"
    Image.new("RGB", (8, 8), color=(0, 0, 255)).save(path, format="JPEG")
    assert load_image_attachment(path).startswith("data:image/jpeg;base64,")

    with pytest.raises(ValidationError) as exc_info:
        load_image_attachment(tmp_path / "missing.png")
    assert exc_info.value.code == "IMAGE_NOT_FOUND"

    with pytest.raises(ValidationError):
        load_image_attachment(path, max_bytes=10)
