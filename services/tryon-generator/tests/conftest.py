import io

import pytest
from PIL import Image


def encode_image(fmt: str = "JPEG", size=(32, 32), color="red", mode: str = "RGB") -> bytes:
    """Creates a tiny real image in the given Pillow format."""
    img = Image.new(mode, size, color=color)
    buffer = io.BytesIO()
    img.save(buffer, fmt)
    return buffer.getvalue()


@pytest.fixture
def image_bytes():
    """Factory fixture: image_bytes("PNG", color="blue") -> bytes"""
    return encode_image


@pytest.fixture
def jpeg_bytes():
    return encode_image("JPEG", color="red")


@pytest.fixture
def png_bytes():
    return encode_image("PNG", color="green")
