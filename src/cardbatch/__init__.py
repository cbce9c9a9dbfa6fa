"""Batch ADF trading-card capture and processing."""

from .capture import BatchCaptureController
from .config import ScanSettings, load_settings, save_settings
from .errors import (
    BatchConflictError,
    CaptureFailure,
    CardBatchError,
    ConfigurationError,
    DeviceError,
    InvalidBatchNameError,
    ProcessingError,
)
from .events import CompleteEvent, ErrorEvent, ProgressEvent
from .models import BatchState, CardAddress, ProcessedCard, ScannerDevice, ScanOptions, Side
from .orchestrator import BatchOrchestrator
from .processing import process_card

__all__ = [
    "BatchCaptureController",
    "BatchConflictError",
    "BatchOrchestrator",
    "BatchState",
    "CaptureFailure",
    "CardAddress",
    "CardBatchError",
    "CompleteEvent",
    "ConfigurationError",
    "DeviceError",
    "ErrorEvent",
    "InvalidBatchNameError",
    "ProcessedCard",
    "ProcessingError",
    "ProgressEvent",
    "ScanOptions",
    "ScanSettings",
    "ScannerDevice",
    "Side",
    "load_settings",
    "process_card",
    "save_settings",
]
