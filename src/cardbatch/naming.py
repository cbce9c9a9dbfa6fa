"""File naming rules for scratch pages, batches and card images."""

from __future__ import annotations

import re
from typing import Optional

from .errors import InvalidBatchNameError
from .models import ImageFormat, Side

PAGE_PATTERN = "page%04d.png"
PAGE_RE = re.compile(r"^page(\d+)\.png$")
_FORBIDDEN_BATCH_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


def parse_page_number(filename: str) -> Optional[int]:
    m = PAGE_RE.match(filename)
    if not m:
        return None
    return int(m.group(1))


def validate_batch_name(name: object) -> str:
    if not isinstance(name, str):
        raise InvalidBatchNameError("Invalid batch name")
    cleaned = name.strip()
    if not cleaned or cleaned in {".", ".."}:
        raise InvalidBatchNameError("Batch name must not be empty")
    if _FORBIDDEN_BATCH_CHARS.search(cleaned):
        raise InvalidBatchNameError(f"Batch name contains invalid characters: {name!r}")
    return cleaned


def generate_filename(card_number: int, side: Side | str, image_format: ImageFormat | str) -> str:
    """Return the output name for a card side, e.g. ``0001F.png``."""

    side_value = Side(side).value
    ext = ImageFormat(image_format).extension
    return f"{card_number:04d}{side_value}.{ext}"
