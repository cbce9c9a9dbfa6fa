"""Top-level batch lifecycle: one active batch, ordered output, terminal events."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

from . import fs
from .capture import BatchCaptureController
from .config import ScanSettings
from .errors import BatchConflictError, CardBatchError, ConfigurationError, DeviceError
from .events import BatchEvent, CaptureFinished, CompleteEvent, ErrorEvent, PageCaptured, ProgressEvent
from .journal import BatchJournal
from .models import BatchPhase, BatchState, CardAddress, ProcessedCard, ProcessingOptions, ScannerDevice, Side
from .naming import validate_batch_name
from .ordered_queue import StrictOrderQueue
from .processing import process_card_async

LOGGER = logging.getLogger(__name__)

Processor = Callable[[bytes, CardAddress, ProcessingOptions], Awaitable[ProcessedCard]]
Writer = Callable[[Path, bytes], Any]


class BatchOrchestrator:
    """Owns the active :class:`BatchState` and reports progress on ``events``."""

    def __init__(
        self,
        settings: Optional[ScanSettings] = None,
        *,
        controller: Optional[BatchCaptureController] = None,
        processor: Processor = process_card_async,
        writer: Writer = fs.write_atomic,
    ) -> None:
        self._settings = settings or ScanSettings()
        self._owns_controller = controller is None
        self._controller = controller or self._build_controller(self._settings)
        self._processor = processor
        self._writer = writer
        self._journal = BatchJournal(self._settings.journal_path)
        self._state: Optional[BatchState] = None
        self._queue: Optional[StrictOrderQueue[ProcessedCard]] = None
        self._task: Optional[asyncio.Task] = None
        self.events: asyncio.Queue[BatchEvent] = asyncio.Queue()

    @staticmethod
    def _build_controller(settings: ScanSettings) -> BatchCaptureController:
        return BatchCaptureController(
            command=settings.scanner_command,
            poll_interval=settings.poll_interval,
            drain_attempts=settings.drain_attempts,
            drain_idle_limit=settings.drain_idle_limit,
        )

    # Presentation-facing operations

    @property
    def controller(self) -> BatchCaptureController:
        return self._controller

    @property
    def state(self) -> Optional[BatchState]:
        return self._state

    def is_capturing(self) -> bool:
        return self._state is not None and self._state.is_active

    def get_settings(self) -> ScanSettings:
        return self._settings

    def set_settings(self, **changes: Any) -> ScanSettings:
        self._settings = self._settings.updated(**changes)
        self._journal = BatchJournal(self._settings.journal_path)
        # a running batch keeps its controller; start() picks the change up next time
        if self._owns_controller and not self.is_capturing():
            self._controller = self._build_controller(self._settings)
        return self._settings

    async def list_devices(self) -> List[ScannerDevice]:
        return await self._controller.list_devices()

    async def start(self, batch_name: object) -> str:
        """Begin a batch and return once the scanner is running."""

        if self.is_capturing():
            raise BatchConflictError("Scan already in progress")
        name = validate_batch_name(batch_name)
        settings = self._settings
        if not settings.device_id:
            raise ConfigurationError("No scanner selected. Please select a scanner in settings.")

        scan_options = settings.scan_options()
        processing_options = settings.processing_options()
        if self._owns_controller:
            self._controller = self._build_controller(settings)

        output_dir = fs.ensure_dir(settings.output_directory / name)
        state = BatchState(batch_name=name, output_dir=output_dir, phase=BatchPhase.CAPTURING)
        self._state = state
        self._queue = StrictOrderQueue(max_concurrency=settings.max_parallel_pages)

        LOGGER.info("Starting scan for batch %s into %s", name, output_dir)
        try:
            await self._controller.open(scan_options)
        except DeviceError as exc:
            LOGGER.error("Failed to start scan: %s", exc)
            self._journal.event("start", name, status="error", message=str(exc))
            self._reset()
            raise
        except BaseException:
            self._reset()
            raise

        self._journal.event("start", name, output=str(output_dir), device=settings.device_id)
        self._task = asyncio.create_task(self._run(state, processing_options), name=f"batch-{name}")
        return f"Scan started for batch: {name}"

    def stop(self) -> None:
        if not self.is_capturing():
            return
        LOGGER.info("Stopping scan")
        self._controller.stop()

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    # Batch execution

    async def _run(self, state: BatchState, options: ProcessingOptions) -> None:
        queue = self._queue
        assert queue is not None
        failure: Optional[CardBatchError] = None
        try:
            async for event in self._controller.events():
                if isinstance(event, PageCaptured):
                    self._enqueue(queue, state, event, options)
                elif isinstance(event, CaptureFinished):
                    state.phase = BatchPhase.DRAINING
                    failure = event.error
                    if event.unread_pages:
                        self._journal.event(
                            "drain", state.batch_name, status="incomplete", unread=list(event.unread_pages)
                        )
                    LOGGER.info(
                        "Batch %s scanner complete: %d pages emitted, waiting for processing queue...",
                        state.batch_name,
                        event.page_count,
                    )
        except CardBatchError as exc:
            failure = exc
        except Exception as exc:
            LOGGER.exception("Capture aborted")
            failure = CardBatchError(f"Capture aborted: {exc}")
        finally:
            state.phase = BatchPhase.DRAINING
            await queue.drain()

        try:
            if failure is None:
                self._complete(state)
            else:
                self._fail(state, failure)
        finally:
            self._reset()

    def _enqueue(self, queue: StrictOrderQueue, state: BatchState, event: PageCaptured, options: ProcessingOptions) -> None:
        page, address = event.page, event.address

        async def compute() -> ProcessedCard:
            return await self._processor(page.data, address, options)

        async def commit(card: Optional[ProcessedCard], error: Optional[BaseException]) -> None:
            if error is not None:
                self._page_failed(state, page.sequence, address, error)
                return
            assert card is not None
            try:
                await asyncio.to_thread(self._writer, state.output_dir / card.filename, card.data)
            except Exception as exc:
                self._page_failed(state, page.sequence, address, exc)
                return
            self._page_done(state, page.sequence, address, card)

        queue.submit(page.sequence, compute, commit)

    def _page_done(self, state: BatchState, sequence: int, address: CardAddress, card: ProcessedCard) -> None:
        state.pages_processed += 1
        if address.side is Side.FRONT:
            state.record_front(address.card_number)
        if not card.validation.valid:
            state.invalid_crops += 1
            LOGGER.warning("[Card %s] Crop warning: %s", address, card.validation.reason)
        LOGGER.info("Saved %s (%d bytes)", card.filename, len(card.data))
        self._journal.event(
            "page",
            state.batch_name,
            sequence=sequence,
            file=card.filename,
            valid=card.validation.valid,
            reason=card.validation.reason,
        )
        self._emit(ProgressEvent(current=state.card_count, total=0, preview=card.data, filename=card.filename))

    def _page_failed(self, state: BatchState, sequence: int, address: CardAddress, error: BaseException) -> None:
        state.pages_failed += 1
        LOGGER.error("Error processing page %d (card %s): %s", sequence, address, error)
        self._journal.event("page", state.batch_name, status="error", sequence=sequence, message=str(error))
        self._emit(ErrorEvent(message=f"Failed to process card {address}", sequence=sequence))
        self._emit(ProgressEvent(current=state.card_count, total=0))

    def _complete(self, state: BatchState) -> None:
        state.phase = BatchPhase.COMPLETED
        message = f"Scanned {state.card_count} cards to {state.output_dir}"
        LOGGER.info("Processing complete: %d cards saved", state.card_count)
        self._journal.event(
            "complete",
            state.batch_name,
            cards=state.card_count,
            pages=state.pages_processed,
            failed=state.pages_failed,
            invalid=state.invalid_crops,
        )
        self._emit(CompleteEvent(success=True, card_count=state.card_count, message=message))

    def _fail(self, state: BatchState, error: CardBatchError) -> None:
        state.phase = BatchPhase.FAILED
        LOGGER.error("Batch %s failed: %s", state.batch_name, error)
        self._journal.event("complete", state.batch_name, status="failed", message=str(error), cards=state.card_count)
        self._emit(ErrorEvent(message=str(error)))
        self._emit(CompleteEvent(success=False, card_count=state.card_count, message=str(error)))

    def _emit(self, event: BatchEvent) -> None:
        self.events.put_nowait(event)

    def _reset(self) -> None:
        self._state = None
        self._queue = None
