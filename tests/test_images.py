import asyncio
import base64
import io

import pytest
from PIL import Image

from conduit.images import downscale_image, parse_data_url, prepare_local_image, split_image


def encode(size, fmt="PNG", mode="RGBA") -> str:
    buffer = io.BytesIO()
    Image.new(mode, size, (10, 20, 30, 255) if mode == "RGBA" else (10, 20, 30)).save(buffer, format=fmt)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def test_parse_data_url():
    assert parse_data_url("data:image/webp;base64,QUJD") == ("image/webp", "QUJD")
    assert split_image("QUJD") == ("image/png", "QUJD")
    with pytest.raises(ValueError):
        parse_data_url("https://example.com/cat.png")


def test_small_image_passes_through():
    payload = encode((32, 16))
    assert downscale_image(payload, 1024) == ("image/png", payload)


def test_large_image_is_resized_to_jpeg():
    mime, payload = downscale_image(encode((2000, 1000)), 500, quality=70)
    assert mime == "image/jpeg"
    with Image.open(io.BytesIO(base64.b64decode(payload))) as img:
        assert img.format == "JPEG"
        assert img.size == (500, 250)


@pytest.mark.asyncio
async def test_prepare_local_image_honors_cancel():
    cancel = asyncio.Event()
    cancel.set()
    assert await prepare_local_image(encode((10, 10)), 64, 80, cancel) is None
    resized = await prepare_local_image("data:image/png;base64," + encode((128, 64)), 64, 80)
    with Image.open(io.BytesIO(base64.b64decode(resized))) as img:
        assert img.size == (64, 32)
