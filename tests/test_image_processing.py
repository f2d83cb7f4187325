from io import BytesIO

import pytest
from PIL import Image

from snaptrack.models.enums import ImageSource
from snaptrack.services.image_source import FileImageSource
from snaptrack.utils.image_processing import optimize_for_upload


def _png(width, height, mode="RGBA"):
    buf = BytesIO()
    Image.new(mode, (width, height), color=0).save(buf, format="PNG")
    return buf.getvalue()


def test_large_image_is_downsized_to_jpeg():
    out = optimize_for_upload(_png(3200, 1600), max_edge=1600, quality=60)
    with Image.open(BytesIO(out)) as img:
        assert img.format == "JPEG"
        assert img.size == (1600, 800)
        assert img.mode == "RGB"


def test_small_image_keeps_dimensions():
    out = optimize_for_upload(_png(300, 200, "RGB"), max_edge=1600, quality=60)
    with Image.open(BytesIO(out)) as img:
        assert img.size == (300, 200)


def test_undecodable_bytes_pass_through():
    data = b"%PDF-1.4 not an image"
    assert optimize_for_upload(data) is data


@pytest.mark.asyncio
async def test_file_image_source_reads_and_optimises(tmp_path):
    path = tmp_path / "scan.png"
    path.write_bytes(_png(2000, 1000))
    image = await FileImageSource(str(path)).acquire()
    assert image.content_type == "image/jpeg"
    assert image.filename == "scan.jpg"
    assert image.source is ImageSource.LIBRARY
    with Image.open(BytesIO(image.read_bytes())) as img:
        assert max(img.size) <= 1600


@pytest.mark.asyncio
async def test_missing_file_acts_like_cancel(tmp_path):
    assert await FileImageSource(str(tmp_path / "none.jpg")).acquire() is None
