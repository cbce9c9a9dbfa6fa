"""Configuration for scanning sessions and card processing."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import AutoBrightnessOptions, ImageFormat, ProcessingOptions, ScanOptions, ToneAdjustment

LOGGER = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path.home() / ".config" / "cardbatch" / "settings.json"

_FORMAT_ALIASES = {"jpeg": "jpg", "jpg": "jpg", "png": "png"}


class ScanSettings(BaseModel):
    """User-facing settings read by the orchestrator when a batch starts."""

    dpi: int = Field(default=600, gt=0, description="Scan resolution in dots per inch.")
    image_format: ImageFormat = Field(default=ImageFormat.PNG, description="Output image format.")
    jpeg_quality: int = Field(default=90, ge=1, le=100, description="JPEG quality when saving as jpg.")
    margin_mm: float = Field(default=2.0, ge=0, description="Border added around each cropped card, in millimetres.")
    output_directory: Path = Field(
        default_factory=lambda: Path.home() / "Documents",
        description="Directory under which one folder per batch is created.",
    )
    device_id: str = Field(default="", description="SANE device identifier of the selected scanner.")
    duplex: bool = Field(default=True, description="Capture both sides of every card.")
    scanner_brightness: int = Field(default=0, ge=-50, le=50, description="Scanner-side brightness.")
    scanner_contrast: int = Field(default=-10, ge=-50, le=50, description="Scanner-side contrast.")
    scanner_gamma: float = Field(default=1.0, ge=0.5, le=2.0, description="Scanner-side gamma.")
    saturation: float = Field(default=0.9, ge=0.5, le=1.5, description="Post-processing saturation factor.")
    auto_brightness: bool = Field(default=False, description="Lift the brightness of dark scans.")
    target_brightness: float = Field(default=128.0, gt=0, le=255)
    min_brightness: float = Field(default=100.0, ge=0, le=255)
    poll_interval: float = Field(default=0.2, gt=0, description="Seconds between scratch directory polls.")
    drain_attempts: int = Field(default=10, ge=1, description="Maximum polls after the scanner exits.")
    drain_idle_limit: int = Field(
        default=3,
        ge=1,
        description="Consecutive polls without new pages before the drain gives up.",
    )
    max_parallel_pages: int = Field(default=2, ge=1, description="Pages processed concurrently.")
    scanner_command: str = Field(default="scanimage", description="Name or path of the scanning tool.")
    journal_path: Optional[Path] = Field(default=None, description="Optional JSONL journal of batch events.")

    model_config = ConfigDict(validate_assignment=True)

    @field_validator("image_format", mode="before")
    @classmethod
    def _normalise_format(cls, value: object) -> object:
        if isinstance(value, str):
            return _FORMAT_ALIASES.get(value.strip().lower(), value)
        return value

    @field_validator("output_directory", "journal_path", mode="before")
    @classmethod
    def _expand_path(cls, value: Path | str | None) -> Optional[Path]:
        if value in (None, ""):
            return None
        return Path(value).expanduser()

    @property
    def margin_px(self) -> int:
        return round(self.margin_mm / 25.4 * self.dpi)

    def updated(self, **changes: Any) -> "ScanSettings":
        data = self.model_dump()
        data.update(changes)
        return ScanSettings.model_validate(data)

    def scan_options(self) -> ScanOptions:
        tone = ToneAdjustment(
            brightness=self.scanner_brightness,
            contrast=self.scanner_contrast,
            gamma=self.scanner_gamma,
        )
        return ScanOptions(
            device_id=self.device_id,
            dpi=self.dpi,
            duplex=self.duplex,
            tone=None if tone.is_neutral else tone,
        )

    def processing_options(self) -> ProcessingOptions:
        auto = None
        if self.auto_brightness:
            auto = AutoBrightnessOptions(
                enabled=True,
                target_brightness=self.target_brightness,
                min_brightness=self.min_brightness,
            )
        return ProcessingOptions(
            margin_px=self.margin_px,
            image_format=self.image_format,
            jpeg_quality=self.jpeg_quality,
            dpi=self.dpi,
            saturation=self.saturation if self.saturation != 1.0 else None,
            auto_brightness=auto,
        )


def load_settings(path: Optional[Path] = None) -> ScanSettings:
    """Read settings from JSON, falling back to defaults for missing keys."""

    path = Path(path) if path else DEFAULT_SETTINGS_PATH
    if not path.exists():
        LOGGER.debug("Settings file %s not found; using defaults", path)
        return ScanSettings()
    data: Dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Settings file must define a JSON object")
    return ScanSettings.model_validate(data)


def save_settings(settings: ScanSettings, path: Optional[Path] = None) -> Path:
    path = Path(path) if path else DEFAULT_SETTINGS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")
    return path
