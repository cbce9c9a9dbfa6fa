"""Data models used across capture and processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Optional


class Side(str, Enum):
    FRONT = "F"
    BACK = "B"


class ImageFormat(str, Enum):
    PNG = "png"
    JPG = "jpg"

    @property
    def extension(self) -> str:
        return self.value


class BatchPhase(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    DRAINING = "draining"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ToneAdjustment:
    """Scanner-side tone settings in the UI-facing ranges."""

    brightness: int = 0
    contrast: int = 0
    gamma: float = 1.0

    def __post_init__(self) -> None:
        if not -50 <= self.brightness <= 50:
            raise ValueError("brightness must be between -50 and 50")
        if not -50 <= self.contrast <= 50:
            raise ValueError("contrast must be between -50 and 50")
        if not 0.5 <= self.gamma <= 2.0:
            raise ValueError("gamma must be between 0.5 and 2.0")

    @property
    def is_neutral(self) -> bool:
        return self.brightness == 0 and self.contrast == 0 and self.gamma == 1.0


@dataclass(frozen=True, slots=True)
class ScanOptions:
    """Parameters for one capture session."""

    device_id: str
    dpi: int = 600
    duplex: bool = True
    tone: Optional[ToneAdjustment] = None

    def __post_init__(self) -> None:
        if not self.device_id:
            raise ValueError("device_id is required")
        if self.dpi <= 0:
            raise ValueError("dpi must be a positive integer")


@dataclass(frozen=True, slots=True)
class ScannerDevice:
    """A scanner reported by the scanning tool's listing mode."""

    id: str
    name: str
    model: str

    def as_payload(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name, "model": self.model}


@dataclass(frozen=True, slots=True)
class Page:
    """One raw page image read from the scratch directory."""

    sequence: int
    data: bytes = field(repr=False)
    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True, slots=True)
class CardAddress:
    card_number: int
    side: Side

    def __str__(self) -> str:
        return f"{self.card_number}{self.side.value}"


@dataclass(frozen=True, slots=True)
class CropRegion:
    left: int
    top: int
    width: int
    height: int


@dataclass(frozen=True, slots=True)
class CropValidation:
    valid: bool
    reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class AutoBrightnessOptions:
    """Brightness normalisation for dark scans."""

    enabled: bool = False
    target_brightness: float = 128.0
    min_brightness: float = 100.0
    max_ratio: float = 2.5


@dataclass(frozen=True, slots=True)
class ProcessingOptions:
    margin_px: int = 0
    image_format: ImageFormat = ImageFormat.PNG
    jpeg_quality: int = 90
    dpi: int = 600
    saturation: Optional[float] = None
    auto_brightness: Optional[AutoBrightnessOptions] = None

    def __post_init__(self) -> None:
        if not 1 <= self.jpeg_quality <= 100:
            raise ValueError("jpeg_quality must be 1..100")
        if self.dpi <= 0:
            raise ValueError("dpi must be a positive integer")
        if self.saturation is not None and not 0.5 <= self.saturation <= 2.0:
            raise ValueError("saturation must be between 0.5 and 2.0")


@dataclass(frozen=True, slots=True)
class ProcessedCard:
    """Final encoded card image and what the pipeline learned about it."""

    filename: str
    data: bytes = field(repr=False)
    region: CropRegion
    validation: CropValidation
    brightness: Optional[float] = None
    brightness_corrected: bool = False


@dataclass(slots=True)
class BatchState:
    """Mutable state of the active batch, owned by the orchestrator."""

    batch_name: str
    output_dir: Path
    phase: BatchPhase = BatchPhase.IDLE
    card_count: int = 0
    pages_processed: int = 0
    pages_failed: int = 0
    invalid_crops: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.phase in {BatchPhase.CAPTURING, BatchPhase.DRAINING}

    def record_front(self, card_number: int) -> None:
        if card_number > self.card_count:
            self.card_count = card_number
