"""
Image Composer - renders the printable QR card (QR + logo + banner + captions)

Layers are drawn strictly in order: background, QR, logo plate, logo
(circular clip), banner, caption texts. Identical specs produce identical
PNG bytes.
"""
import io
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import qrcode
from qrcode.exceptions import DataOverflowError
from PIL import Image, ImageColor, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from canteen.core.errors import PayloadTooLargeError

logger = logging.getLogger(__name__)

QR_SIZE = 150
LOGO_RATIO = 0.30
LOGO_PLATE_MARGIN = 8
HAIRLINE_COLOUR = "#F3F4F6"
TEXT_COLOUR = "#111827"
MUTED_TEXT_COLOUR = "#4B5563"

# Portrait: 280 wide, name row, QR, banner, hairline + footer
PORTRAIT_WIDTH = 280
PORTRAIT_QR_Y = 39
PORTRAIT_BANNER_HEIGHT = 120
PORTRAIT_FOOTER_HEIGHT = 54
PORTRAIT_HEIGHT = PORTRAIT_QR_Y + QR_SIZE + 10 + PORTRAIT_BANNER_HEIGHT + 11 + PORTRAIT_FOOTER_HEIGHT

# Landscape: QR left, banner right
LANDSCAPE_PAD = 16
LANDSCAPE_GAP = 20
LANDSCAPE_NAME_HEIGHT = 35
LANDSCAPE_FOOTER_GAP = 8
LANDSCAPE_FOOTER_HEIGHT = 30
LANDSCAPE_WIDTH = LANDSCAPE_PAD + QR_SIZE + LANDSCAPE_GAP + QR_SIZE + LANDSCAPE_PAD
LANDSCAPE_HEIGHT = (
    LANDSCAPE_PAD + LANDSCAPE_NAME_HEIGHT + QR_SIZE
    + LANDSCAPE_FOOTER_GAP + LANDSCAPE_FOOTER_HEIGHT + LANDSCAPE_PAD
)

DEFAULT_TITLE_LINES = ("ORDER YOUR", "FOOD HERE")
DEFAULT_SUBTITLE = "Scan | Order | Pay"


@dataclass
class Captions:
    title: Optional[str] = None  # newline separated; defaults to DEFAULT_TITLE_LINES
    subtitle: Optional[str] = DEFAULT_SUBTITLE
    footer: Optional[str] = None


@dataclass
class ImageSpec:
    payload: str
    canvas_kind: str = "landscape"  # portrait, landscape
    qr_colour: str = "#000000"
    background: str = "#FFFFFF"
    logo: Optional[bytes] = None
    banner_image: Optional[bytes] = None
    captions: Captions = field(default_factory=Captions)
    theater_name: Optional[str] = None


@dataclass
class ComposedImage:
    png: bytes
    width: int
    height: int
    warnings: List[str] = field(default_factory=list)


@dataclass
class _Layout:
    width: int
    height: int
    name_centre: Tuple[int, int]
    qr_origin: Tuple[int, int]
    banner_box: Tuple[int, int, int, int]
    hairline_y: int
    footer_centre: Tuple[int, int]


def _portrait_layout() -> _Layout:
    qr_x = (PORTRAIT_WIDTH - QR_SIZE) // 2
    banner_top = PORTRAIT_QR_Y + QR_SIZE + 10
    banner_bottom = banner_top + PORTRAIT_BANNER_HEIGHT
    hairline_y = banner_bottom + 11
    return _Layout(
        width=PORTRAIT_WIDTH,
        height=PORTRAIT_HEIGHT,
        name_centre=(PORTRAIT_WIDTH // 2, 22),
        qr_origin=(qr_x, PORTRAIT_QR_Y),
        banner_box=(20, banner_top, PORTRAIT_WIDTH - 20, banner_bottom),
        hairline_y=hairline_y,
        footer_centre=(PORTRAIT_WIDTH // 2, hairline_y + PORTRAIT_FOOTER_HEIGHT // 2),
    )


def _landscape_layout() -> _Layout:
    qr_y = LANDSCAPE_PAD + LANDSCAPE_NAME_HEIGHT
    banner_x = LANDSCAPE_PAD + QR_SIZE + LANDSCAPE_GAP
    footer_top = qr_y + QR_SIZE + LANDSCAPE_FOOTER_GAP
    return _Layout(
        width=LANDSCAPE_WIDTH,
        height=LANDSCAPE_HEIGHT,
        name_centre=(LANDSCAPE_WIDTH // 2, LANDSCAPE_PAD + LANDSCAPE_NAME_HEIGHT // 2),
        qr_origin=(LANDSCAPE_PAD, qr_y),
        banner_box=(banner_x, qr_y, banner_x + QR_SIZE, qr_y + QR_SIZE),
        hairline_y=footer_top - LANDSCAPE_FOOTER_GAP // 2,
        footer_centre=(LANDSCAPE_WIDTH // 2, footer_top + LANDSCAPE_FOOTER_HEIGHT // 2),
    )


def _hex(rgb) -> str:
    return "#{:02x}{:02x}{:02x}".format(*rgb[:3])


def _font(size: int):
    return ImageFont.load_default(size=size)


def _fit_text(draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> str:
    """Trim text with an ellipsis until it fits max_width"""
    if draw.textlength(text, font=font) <= max_width:
        return text
    while text and draw.textlength(text + "...", font=font) > max_width:
        text = text[:-1]
    return text + "..."


class ImageComposer:
    """Stateless; safe to share between requests"""

    def _parse_colour(self, value: str, fallback: str, label: str, warnings: List[str]):
        try:
            return ImageColor.getrgb(value)
        except (ValueError, AttributeError):
            message = f"Invalid {label} colour {value!r}; using {fallback}"
            logger.warning(message)
            warnings.append(message)
            return ImageColor.getrgb(fallback)

    def _decode(self, data: bytes, label: str, warnings: List[str]) -> Optional[Image.Image]:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            message = f"Could not decode {label} image: {e}"
            logger.warning(message)
            warnings.append(message)
            return None
        return image.convert("RGBA")

    def build_matrix(self, payload: str) -> qrcode.QRCode:
        """Encode at error correction H; raises PayloadTooLargeError on overflow"""
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_H,
            box_size=10,
            border=1,
        )
        qr.add_data(payload)
        try:
            qr.make(fit=True)
        except (DataOverflowError, ValueError) as e:
            raise PayloadTooLargeError(
                f"Payload of {len(payload)} characters does not fit a level-H QR code",
                details={"length": len(payload)},
            ) from e
        return qr

    def _render_qr(self, qr: qrcode.QRCode, fill, back) -> Image.Image:
        image = qr.make_image(fill_color=_hex(fill), back_color=_hex(back)).get_image()
        return image.convert("RGB").resize((QR_SIZE, QR_SIZE), Image.Resampling.NEAREST)

    def _draw_logo(self, canvas: Image.Image, logo: Image.Image, qr_origin: Tuple[int, int]):
        logo_size = int(QR_SIZE * LOGO_RATIO)
        cx = qr_origin[0] + QR_SIZE / 2
        cy = qr_origin[1] + QR_SIZE / 2

        plate_radius = logo_size / 2 + LOGO_PLATE_MARGIN
        draw = ImageDraw.Draw(canvas)
        draw.ellipse(
            (cx - plate_radius, cy - plate_radius, cx + plate_radius, cy + plate_radius),
            fill="#FFFFFF",
        )

        clip_radius = logo_size / 2 - 1
        fitted = ImageOps.fit(logo, (logo_size, logo_size), method=Image.Resampling.LANCZOS)
        mask = Image.new("L", (logo_size, logo_size), 0)
        centre = logo_size / 2
        ImageDraw.Draw(mask).ellipse(
            (centre - clip_radius, centre - clip_radius, centre + clip_radius, centre + clip_radius),
            fill=255,
        )
        mask = Image.composite(fitted.getchannel("A"), mask, mask)
        canvas.paste(fitted, (int(cx - centre), int(cy - centre)), mask)

    def _draw_banner(self, canvas: Image.Image, banner: Image.Image, box: Tuple[int, int, int, int]):
        slot_w = box[2] - box[0]
        slot_h = box[3] - box[1]
        contained = ImageOps.contain(banner, (slot_w, slot_h), method=Image.Resampling.LANCZOS)
        x = box[0] + (slot_w - contained.width) // 2
        y = box[1] + (slot_h - contained.height) // 2
        canvas.paste(contained, (x, y), contained)

    def _draw_banner_captions(self, draw: ImageDraw.ImageDraw, captions: Captions, box):
        lines = captions.title.split("\n") if captions.title else list(DEFAULT_TITLE_LINES)
        slot_w = box[2] - box[0]
        cx = (box[0] + box[2]) // 2
        title_font = _font(20)
        subtitle_font = _font(12)

        line_height = 26
        block = line_height * len(lines) + (22 if captions.subtitle else 0)
        y = (box[1] + box[3]) // 2 - block // 2 + line_height // 2
        for line in lines:
            draw.text((cx, y), _fit_text(draw, line, title_font, slot_w), fill=TEXT_COLOUR, font=title_font, anchor="mm")
            y += line_height
        if captions.subtitle:
            draw.text(
                (cx, y), _fit_text(draw, captions.subtitle, subtitle_font, slot_w),
                fill=MUTED_TEXT_COLOUR, font=subtitle_font, anchor="mm",
            )

    def compose(self, spec: ImageSpec) -> ComposedImage:
        warnings: List[str] = []

        # Capacity check before any raster work
        qr = self.build_matrix(spec.payload)

        if spec.canvas_kind == "portrait":
            layout = _portrait_layout()
        elif spec.canvas_kind == "landscape":
            layout = _landscape_layout()
        else:
            raise ValueError(f"Unknown canvas kind: {spec.canvas_kind}")

        background = self._parse_colour(spec.background, "#FFFFFF", "background", warnings)
        qr_colour = self._parse_colour(spec.qr_colour, "#000000", "QR", warnings)

        logo = self._decode(spec.logo, "logo", warnings) if spec.logo else None
        banner = self._decode(spec.banner_image, "banner", warnings) if spec.banner_image else None

        # 1. background
        canvas = Image.new("RGB", (layout.width, layout.height), background)
        # 2. QR
        canvas.paste(self._render_qr(qr, qr_colour, background), layout.qr_origin)
        # 3-4. logo plate + clipped logo
        if logo is not None:
            self._draw_logo(canvas, logo, layout.qr_origin)
        # 5. banner
        if banner is not None:
            self._draw_banner(canvas, banner, layout.banner_box)

        # 6. captions
        draw = ImageDraw.Draw(canvas)
        if banner is None:
            self._draw_banner_captions(draw, spec.captions, layout.banner_box)

        text_width = layout.width - 2 * LANDSCAPE_PAD
        if spec.theater_name:
            name_font = _font(16)
            draw.text(
                layout.name_centre, _fit_text(draw, spec.theater_name, name_font, text_width),
                fill=TEXT_COLOUR, font=name_font, anchor="mm",
            )

        if spec.captions.footer:
            draw.line(
                (LANDSCAPE_PAD, layout.hairline_y, layout.width - LANDSCAPE_PAD, layout.hairline_y),
                fill=HAIRLINE_COLOUR, width=1,
            )
            footer_font = _font(14)
            draw.text(
                layout.footer_centre, _fit_text(draw, spec.captions.footer, footer_font, text_width),
                fill=TEXT_COLOUR, font=footer_font, anchor="mm",
            )

        buffer = io.BytesIO()
        canvas.save(buffer, format="PNG")
        return ComposedImage(png=buffer.getvalue(), width=layout.width, height=layout.height, warnings=warnings)
