"""Batch capture: scanner session, page discovery and duplex labelling."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional

from . import device
from .device import DeviceSession
from .duplex import map_page
from .errors import CaptureFailure, CardBatchError, DeviceError
from .events import CaptureEvent, CaptureFinished, PageCaptured, PageReady, SessionClosed, SessionProcessError
from .models import Page, ScannerDevice, ScanOptions
from .poller import PagePoller

LOGGER = logging.getLogger(__name__)

SessionFactory = Callable[[ScanOptions], DeviceSession]


class BatchCaptureController:
    """Runs one scanner session at a time and yields labelled pages."""

    def __init__(
        self,
        *,
        command: str = "scanimage",
        poll_interval: float = 0.2,
        drain_attempts: int = 10,
        drain_idle_limit: int = 3,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.command = command
        self.poll_interval = poll_interval
        self.drain_attempts = drain_attempts
        self.drain_idle_limit = drain_idle_limit
        self._session_factory = session_factory or (lambda options: DeviceSession(options, command=command))
        self._session: Optional[DeviceSession] = None
        self._options: Optional[ScanOptions] = None
        self._poller: Optional[PagePoller] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def is_capturing(self) -> bool:
        return self._session is not None

    async def list_devices(self) -> List[ScannerDevice]:
        return await device.list_devices(self.command)

    async def open(self, options: ScanOptions) -> None:
        """Start the scanner; raises :class:`DeviceError` if it cannot run."""

        if self._session is not None:
            raise DeviceError("Scan already in progress")
        session = self._session_factory(options)
        self._session = session
        self._options = options
        try:
            scratch_dir = await session.open()
        except BaseException:
            self._reset()
            raise
        self._poller = PagePoller(
            scratch_dir,
            interval=self.poll_interval,
            drain_attempts=self.drain_attempts,
            drain_idle_limit=self.drain_idle_limit,
        )
        self._poll_task = asyncio.create_task(self._poller.run(self._forward), name="page-poller")

    async def _forward(self, page: Page) -> None:
        assert self._session is not None
        await self._session.events.put(PageReady(page))

    def _label(self, page: Page) -> PageCaptured:
        assert self._options is not None
        address = map_page(page.sequence, self._options.duplex)
        LOGGER.info("Received page %d -> card %s", page.sequence, address)
        return PageCaptured(page=page, address=address)

    async def events(self) -> AsyncIterator[CaptureEvent]:
        """Yield labelled pages, then a single :class:`CaptureFinished`."""

        session = self._session
        if session is None:
            raise CardBatchError("No capture session is open")
        error: Optional[CardBatchError] = None
        unread: tuple = ()
        try:
            while True:
                event = await session.events.get()
                if isinstance(event, PageReady):
                    yield self._label(event.page)
                elif isinstance(event, SessionProcessError):
                    error = DeviceError(event.message)
                    break
                elif isinstance(event, SessionClosed):
                    break

            # The producer is gone; collect what the poller already queued
            # and whatever it had not seen yet.
            trailing: List[Page] = []
            await self._halt_poller()
            while not session.events.empty():
                event = session.events.get_nowait()
                if isinstance(event, PageReady):
                    trailing.append(event.page)
            if self._poller is not None:
                report = await self._poller.drain(self._collect_into(trailing))
                unread = report.unread
            for page in sorted(trailing, key=lambda p: p.sequence):
                yield self._label(page)

            if error is None:
                error = session.failure()
            page_count = len(self._poller.emitted) if self._poller else 0
            if isinstance(error, CaptureFailure):
                LOGGER.error("Capture failed after %d page(s): %s", page_count, error)
            else:
                LOGGER.info("Scanner complete: %d page(s) emitted", page_count)
            yield CaptureFinished(page_count=page_count, error=error, unread_pages=unread)
        finally:
            await self._halt_poller()
            session.cleanup()
            self._reset()

    @staticmethod
    def _collect_into(pages: List[Page]):
        async def _collect(page: Page) -> None:
            pages.append(page)

        return _collect

    async def _halt_poller(self) -> None:
        if self._poller is not None:
            self._poller.halt()
        if self._poll_task is not None:
            (outcome,) = await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None
            if isinstance(outcome, Exception):
                LOGGER.error("Page poller stopped unexpectedly: %s", outcome)

    def stop(self) -> None:
        if self._session is None:
            return
        if self._poller is not None:
            self._poller.halt()
        self._session.stop()

    def _reset(self) -> None:
        self._session = None
        self._options = None
        self._poller = None
        self._poll_task = None
