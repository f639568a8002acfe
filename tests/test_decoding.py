import io

import numpy as np
import pytest
from PIL import Image

from conftest import encode, noise_image
from melanoma_service.core.errors import DecodeError, PayloadTooLargeError, UnsupportedMediaTypeError
from melanoma_service.ml.decoding import decode_image

ALLOWED = ["image/jpeg", "image/png"]


def test_decode_jpeg():
    buf = decode_image(encode(noise_image(width=50, height=30)), "image/jpeg")

    assert (buf.width, buf.height, buf.channels) == (50, 30, 3)
    assert buf.pixels.dtype == np.uint8


def test_decode_png_is_lossless():
    img = noise_image(width=20, height=10)
    buf = decode_image(encode(img, fmt="PNG"), "image/png")

    assert np.array_equal(buf.pixels, np.array(img))


def test_pixels_are_read_only():
    buf = decode_image(encode(noise_image(), fmt="PNG"))

    with pytest.raises(ValueError):
        buf.pixels[0, 0, 0] = 1


@pytest.mark.parametrize("mode", ["L", "RGBA", "LA", "P", "1"])
def test_modes_convertible_to_rgb(mode):
    img = noise_image(width=16, height=12).convert(mode)
    buf = decode_image(encode(img, fmt="PNG"), "image/png")

    assert buf.pixels.shape == (12, 16, 3)


def test_grayscale_becomes_equal_channels():
    img = Image.new("L", (4, 4), 77)
    buf = decode_image(encode(img, fmt="PNG"))

    assert np.all(buf.pixels == 77)


def test_multi_picture_jpeg_uses_first_frame():
    first = Image.new("RGB", (24, 16), (250, 10, 10))
    second = Image.new("RGB", (24, 16), (10, 10, 250))
    buf = io.BytesIO()
    first.save(buf, format="MPO", save_all=True, append_images=[second])
    data = buf.getvalue()
    assert data[:3] == b"\xff\xd8\xff"

    decoded = decode_image(data, "image/jpeg", allowed_content_types=ALLOWED)

    assert (decoded.width, decoded.height) == (24, 16)
    assert decoded.pixels[..., 0].mean() > 200
    assert decoded.pixels[..., 2].mean() < 50


def test_16bit_grayscale_png():
    arr = np.zeros((6, 10), dtype=np.uint16)
    arr[:, :5] = 65535
    arr[:, 5:] = 256 * 100
    buf = io.BytesIO()
    Image.fromarray(arr).save(buf, format="PNG")

    decoded = decode_image(buf.getvalue(), "image/png", allowed_content_types=ALLOWED)

    assert decoded.pixels.shape == (6, 10, 3)
    assert np.all(decoded.pixels[:, :5] == 255)
    assert np.all(decoded.pixels[:, 5:] == 100)


def test_cmyk_is_rejected():
    img = Image.new("CMYK", (8, 8), (0, 0, 0, 0))

    with pytest.raises(DecodeError, match="Unsupported channel layout"):
        decode_image(encode(img, fmt="JPEG"), "image/jpeg")


def test_exif_orientation_is_applied():
    img = noise_image(width=40, height=20)
    exif = Image.Exif()
    exif[0x0112] = 6  # rotated 90 degrees clockwise
    buf = io.BytesIO()
    img.save(buf, format="JPEG", exif=exif.tobytes())

    decoded = decode_image(buf.getvalue(), "image/jpeg")
    assert (decoded.width, decoded.height) == (20, 40)


def test_empty_bytes():
    with pytest.raises(DecodeError, match="Empty file"):
        decode_image(b"", "image/jpeg")


def test_garbage_bytes():
    with pytest.raises(DecodeError, match="Could not decode image"):
        decode_image(b"\x00\x01\x02\x03\x04", "image/jpeg")


@pytest.mark.parametrize("fmt", ["JPEG", "PNG"])
def test_truncated_image(fmt):
    data = encode(noise_image(), fmt=fmt)

    with pytest.raises(DecodeError):
        decode_image(data[: len(data) // 2])


def test_declared_content_type_must_be_allowed():
    with pytest.raises(UnsupportedMediaTypeError):
        decode_image(b"hello", "text/plain", allowed_content_types=ALLOWED)


def test_content_type_parameters_are_ignored():
    buf = decode_image(
        encode(noise_image()),
        "image/jpeg; charset=binary",
        allowed_content_types=ALLOWED,
    )
    assert buf.channels == 3


def test_unsupported_container_format():
    with pytest.raises(UnsupportedMediaTypeError):
        decode_image(encode(noise_image(), fmt="BMP"), None)


def test_upload_size_limit():
    with pytest.raises(PayloadTooLargeError):
        decode_image(encode(noise_image()), max_bytes=10)


def test_pixel_limit():
    with pytest.raises(DecodeError, match="too large"):
        decode_image(encode(noise_image(width=100, height=100), fmt="PNG"), max_pixels=5000)
