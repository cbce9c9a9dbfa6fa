"""Per-page image processing: crop, validate, correct, margin and encode."""

from __future__ import annotations

import asyncio
import io
import logging
import math
from typing import Optional, Tuple

from PIL import Image, ImageChops, ImageEnhance, ImageOps, ImageStat

from .errors import ProcessingError
from .models import (
    AutoBrightnessOptions,
    CardAddress,
    CropRegion,
    CropValidation,
    ImageFormat,
    ProcessedCard,
    ProcessingOptions,
)
from .naming import generate_filename

LOGGER = logging.getLogger(__name__)

# Standard TCG card
CARD_WIDTH_MM = 63
CARD_HEIGHT_MM = 88
TOLERANCE = 0.15

BLACK = (0, 0, 0)
DEFAULT_CROP_THRESHOLD = 30

Color = Tuple[int, int, int]


def mm_to_pixels(mm: float, dpi: int) -> int:
    return round(mm / 25.4 * dpi)


def decode_image(data: bytes) -> Image.Image:
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        return img.convert("RGB")


def auto_crop(
    image: Image.Image,
    background: Color = BLACK,
    threshold: int = DEFAULT_CROP_THRESHOLD,
) -> Tuple[Image.Image, CropRegion]:
    """Trim the background around the card.

    A pixel is content when any channel differs from ``background`` by more
    than ``threshold``. An image with no content is returned unchanged.
    """

    image = image.convert("RGB")
    diff = ImageChops.difference(image, Image.new("RGB", image.size, background))
    red, green, blue = diff.split()
    deviation = ImageChops.lighter(ImageChops.lighter(red, green), blue)
    mask = deviation.point(lambda v: 255 if v > threshold else 0)
    bbox = mask.getbbox()
    if bbox is None:
        width, height = image.size
        return image, CropRegion(left=0, top=0, width=width, height=height)
    left, top, right, bottom = bbox
    region = CropRegion(left=left, top=top, width=right - left, height=bottom - top)
    return image.crop(bbox), region


def expected_card_size(dpi: int) -> Tuple[int, int]:
    return mm_to_pixels(CARD_WIDTH_MM, dpi), mm_to_pixels(CARD_HEIGHT_MM, dpi)


def validate_crop(region: CropRegion, dpi: int) -> CropValidation:
    expected_width, expected_height = expected_card_size(dpi)
    min_width = expected_width * (1 - TOLERANCE)
    max_width = expected_width * (1 + TOLERANCE)
    min_height = expected_height * (1 - TOLERANCE)
    max_height = expected_height * (1 + TOLERANCE)

    if region.width < min_width or region.width > max_width:
        return CropValidation(
            valid=False,
            reason=(
                f"Width {region.width}px outside expected range "
                f"{round(min_width)}-{round(max_width)}px"
            ),
        )
    if region.height < min_height or region.height > max_height:
        return CropValidation(
            valid=False,
            reason=(
                f"Height {region.height}px outside expected range "
                f"{round(min_height)}-{round(max_height)}px"
            ),
        )

    expected_ratio = CARD_WIDTH_MM / CARD_HEIGHT_MM
    actual_ratio = region.width / region.height
    if abs(actual_ratio - expected_ratio) / expected_ratio > TOLERANCE:
        return CropValidation(
            valid=False,
            reason=f"Aspect ratio {actual_ratio:.3f} differs from expected {expected_ratio:.3f}",
        )
    return CropValidation(valid=True)


def analyze_brightness(image: Image.Image) -> float:
    """Mean perceived luminance (0-255)."""

    r, g, b = ImageStat.Stat(image.convert("RGB")).mean
    return 0.299 * r + 0.587 * g + 0.114 * b


def brightness_gamma(measured: float, target: float, max_ratio: float = 2.5) -> float:
    """Gamma exponent lifting ``measured`` toward ``target``.

    The ratio is clamped to ``[1.0, max_ratio]`` so the result is in (0, 1].
    """

    ratio = target / measured if measured > 0 else max_ratio
    ratio = min(max(ratio, 1.0), max_ratio)
    return 1 / math.sqrt(ratio)


def apply_gamma(image: Image.Image, gamma: float) -> Image.Image:
    lut = [round(255 * (i / 255) ** gamma) for i in range(256)]
    return image.point(lut * len(image.getbands()))


def normalize_brightness(
    image: Image.Image, options: AutoBrightnessOptions
) -> Tuple[Image.Image, bool, Optional[float]]:
    """Lift dark scans; returns (image, corrected, measured brightness)."""

    if not options.enabled:
        return image, False, None
    brightness = analyze_brightness(image)
    if brightness >= options.min_brightness:
        return image, False, brightness
    gamma = brightness_gamma(brightness, options.target_brightness, options.max_ratio)
    return apply_gamma(image, gamma), True, brightness


def adjust_saturation(image: Image.Image, factor: Optional[float]) -> Image.Image:
    if factor is None or factor == 1.0:
        return image
    return ImageEnhance.Color(image).enhance(factor)


def add_margin(image: Image.Image, margin_px: int, background: Color = BLACK) -> Image.Image:
    if margin_px <= 0:
        return image
    return ImageOps.expand(image, border=margin_px, fill=background)


def encode_image(image: Image.Image, image_format: ImageFormat, jpeg_quality: int = 90) -> bytes:
    buf = io.BytesIO()
    if ImageFormat(image_format) is ImageFormat.JPG:
        # subsampling=0 keeps 4:4:4 chroma
        image.convert("RGB").save(buf, format="JPEG", quality=jpeg_quality, subsampling=0)
    else:
        image.save(buf, format="PNG")
    return buf.getvalue()


def process_card(raw: bytes, address: CardAddress, options: ProcessingOptions) -> ProcessedCard:
    """Run one raw page through the full pipeline."""

    try:
        image = decode_image(raw)
        cropped, region = auto_crop(image)
        validation = validate_crop(region, options.dpi)

        brightness = None
        corrected = False
        if options.auto_brightness is not None and options.auto_brightness.enabled:
            cropped, corrected, brightness = normalize_brightness(cropped, options.auto_brightness)
            if corrected:
                LOGGER.info("Card %s: brightness %.1f -> corrected", address, brightness)

        adjusted = adjust_saturation(cropped, options.saturation)
        framed = add_margin(adjusted, options.margin_px)
        data = encode_image(framed, options.image_format, options.jpeg_quality)
        filename = generate_filename(address.card_number, address.side, options.image_format)
    except Exception as exc:
        raise ProcessingError(address.card_number, address.side.value, exc) from exc

    return ProcessedCard(
        filename=filename,
        data=data,
        region=region,
        validation=validation,
        brightness=brightness,
        brightness_corrected=corrected,
    )


async def process_card_async(raw: bytes, address: CardAddress, options: ProcessingOptions) -> ProcessedCard:
    return await asyncio.to_thread(process_card, raw, address, options)

