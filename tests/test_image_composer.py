"""
ImageComposer: canvas sizes, layer order, determinism and degraded inputs
"""
import io

import pytest
from PIL import Image

from canteen.core.errors import PayloadTooLargeError
from canteen.services.image_composer import (
    LANDSCAPE_HEIGHT,
    LANDSCAPE_WIDTH,
    PORTRAIT_HEIGHT,
    PORTRAIT_WIDTH,
    Captions,
    ImageComposer,
    ImageSpec,
)
from conftest import png_bytes

PAYLOAD = "http://menu.test/menu/T1?qrName=Screen%20-%201&seat=A1&type=screen"


def _open(png: bytes) -> Image.Image:
    return Image.open(io.BytesIO(png)).convert("RGB")


def test_landscape_card_dimensions():
    composed = ImageComposer().compose(ImageSpec(payload=PAYLOAD, theater_name="PVR Main"))

    assert composed.png.startswith(b"\x89PNG")
    assert (composed.width, composed.height) == (LANDSCAPE_WIDTH, LANDSCAPE_HEIGHT) == (352, 255)
    assert _open(composed.png).size == (352, 255)
    assert composed.warnings == []


def test_portrait_card_dimensions():
    composed = ImageComposer().compose(ImageSpec(payload=PAYLOAD, canvas_kind="portrait"))

    assert (composed.width, composed.height) == (PORTRAIT_WIDTH, PORTRAIT_HEIGHT) == (280, 384)
    assert _open(composed.png).size == (280, 384)


def test_same_spec_gives_identical_bytes():
    composer = ImageComposer()
    spec = ImageSpec(
        payload=PAYLOAD,
        logo=png_bytes("#00AA00"),
        captions=Captions(footer="Screen - 1 | A1"),
        theater_name="PVR Main",
    )

    assert composer.compose(spec).png == composer.compose(spec).png


def test_logo_is_drawn_over_qr_centre():
    composed = ImageComposer().compose(ImageSpec(payload=PAYLOAD, logo=png_bytes("#FF0000")))
    image = _open(composed.png)

    # Landscape QR occupies (16, 51)-(166, 201)
    assert image.getpixel((91, 126)) == (255, 0, 0)


def test_banner_replaces_default_captions():
    composed = ImageComposer().compose(ImageSpec(
        payload=PAYLOAD,
        banner_image=png_bytes("#0000FF", size=(150, 150)),
    ))
    image = _open(composed.png)

    # Landscape banner slot is (186, 51)-(336, 201)
    assert image.getpixel((260, 126)) == (0, 0, 255)


def test_undecodable_logo_is_skipped_with_warning():
    composed = ImageComposer().compose(ImageSpec(payload=PAYLOAD, logo=b"not an image"))

    assert composed.png.startswith(b"\x89PNG")
    assert len(composed.warnings) == 1
    assert "logo" in composed.warnings[0]


def test_oversized_logo_is_skipped_with_warning(monkeypatch):
    logo = png_bytes("#FF0000", size=(64, 64))
    # 64x64 is more than twice the pixel limit, so Pillow refuses to open it
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)

    composed = ImageComposer().compose(ImageSpec(payload=PAYLOAD, logo=logo))

    assert composed.png.startswith(b"\x89PNG")
    assert len(composed.warnings) == 1
    assert "logo" in composed.warnings[0]
    monkeypatch.undo()
    assert _open(composed.png).getpixel((91, 126)) != (255, 0, 0)


def test_invalid_colour_falls_back():
    composed = ImageComposer().compose(ImageSpec(payload=PAYLOAD, background="not-a-colour"))

    assert any("background" in w for w in composed.warnings)
    assert _open(composed.png).getpixel((1, 1)) == (255, 255, 255)


def test_custom_colours_are_used():
    composed = ImageComposer().compose(ImageSpec(payload=PAYLOAD, background="#FFF8E1"))

    assert _open(composed.png).getpixel((1, 1)) == (255, 248, 225)


def test_oversized_payload_is_rejected():
    with pytest.raises(PayloadTooLargeError):
        ImageComposer().compose(ImageSpec(payload="x" * 3000))


def test_unknown_canvas_kind():
    with pytest.raises(ValueError):
        ImageComposer().compose(ImageSpec(payload=PAYLOAD, canvas_kind="square"))
