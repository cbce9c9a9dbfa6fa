"""Events passed between the capture layer, the orchestrator and its caller."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from .errors import CardBatchError
from .models import CardAddress, Page


# Device session channel


@dataclass(frozen=True)
class SessionClosed:
    exit_status: Optional[int]


@dataclass(frozen=True)
class SessionProcessError:
    kind: str
    message: str

    NOT_INSTALLED = "not-installed"
    SPAWN_FAILED = "spawn-failed"


@dataclass(frozen=True)
class PageReady:
    page: Page


SessionEvent = Union[SessionClosed, SessionProcessError, PageReady]


# Capture controller output


@dataclass(frozen=True)
class PageCaptured:
    page: Page
    address: CardAddress


@dataclass(frozen=True)
class CaptureFinished:
    page_count: int
    error: Optional[CardBatchError] = None
    unread_pages: tuple = ()

    @property
    def success(self) -> bool:
        return self.error is None


CaptureEvent = Union[PageCaptured, CaptureFinished]


# Orchestrator output


@dataclass(frozen=True)
class ProgressEvent:
    current: int
    total: int = 0
    preview: Optional[bytes] = field(default=None, repr=False)
    filename: Optional[str] = None


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    sequence: Optional[int] = None


@dataclass(frozen=True)
class CompleteEvent:
    success: bool
    card_count: int
    message: str


BatchEvent = Union[ProgressEvent, ErrorEvent, CompleteEvent]
