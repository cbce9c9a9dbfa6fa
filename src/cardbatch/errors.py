"""Error taxonomy for batch capture and card processing."""

from __future__ import annotations

from typing import Optional


class CardBatchError(RuntimeError):
    """Base class for errors raised by cardbatch."""


class DeviceError(CardBatchError):
    """Raised when the scanning tool cannot be started or queried."""


class ScannerNotFoundError(DeviceError):
    """Raised when the scanimage executable is not installed."""


class DevicePermissionError(DeviceError):
    """Raised when the current user may not access the scanner."""


class CaptureFailure(CardBatchError):
    """Raised when the scanning process exits with an unexpected status."""

    def __init__(self, exit_status: Optional[int], detail: str = "") -> None:
        self.exit_status = exit_status
        self.detail = detail
        message = f"Scanner exited with code {exit_status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ProcessingError(CardBatchError):
    """Raised when a page cannot be turned into a card image."""

    def __init__(self, card_number: int, side: str, cause: BaseException) -> None:
        self.card_number = card_number
        self.side = side
        self.cause = cause
        super().__init__(f"Failed to process card {card_number}{side}: {cause}")


class BatchConflictError(CardBatchError):
    """Raised when a batch is started while another one is active."""


class InvalidBatchNameError(CardBatchError, ValueError):
    """Raised for batch names that cannot be used as a directory name."""


class ConfigurationError(CardBatchError):
    """Raised when the settings do not allow a batch to start."""
