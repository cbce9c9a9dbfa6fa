import asyncio
import json
import logging

import pytest

from cardbatch import fs
from cardbatch.config import ScanSettings
from cardbatch.duplex import map_page
from cardbatch.errors import (
    BatchConflictError,
    CaptureFailure,
    ConfigurationError,
    InvalidBatchNameError,
    ProcessingError,
    ScannerNotFoundError,
)
from cardbatch.events import CaptureFinished, CompleteEvent, ErrorEvent, PageCaptured, ProgressEvent
from cardbatch.models import CropRegion, CropValidation, Page, ProcessedCard, ScannerDevice
from cardbatch.naming import generate_filename
from cardbatch.orchestrator import BatchOrchestrator

from conftest import png_bytes

WAIT_FOR_STOP = object()


class FakeController:
    """Replays a fixed sequence of capture events."""

    def __init__(self, script=(), open_error=None):
        self.script = list(script)
        self.open_error = open_error
        self.options = None
        self._stopped = asyncio.Event()

    async def open(self, options):
        if self.open_error is not None:
            raise self.open_error
        self.options = options

    async def events(self):
        for event in self.script:
            if event is WAIT_FOR_STOP:
                await self._stopped.wait()
                continue
            yield event

    def stop(self):
        self._stopped.set()

    async def list_devices(self):
        return [ScannerDevice(id='fake:0', name='Fake ADS-1000', model='ADS-1000')]


def captured(sequence, duplex=True):
    return PageCaptured(page=Page(sequence=sequence, data=png_bytes()), address=map_page(sequence, duplex))


def make_processor(delays=None, failing=(), invalid=()):
    delays = delays or {}

    async def processor(raw, address, options):
        sequence = address.card_number * 2 - (1 if address.side.value == 'F' else 0)
        await asyncio.sleep(delays.get(sequence, 0))
        if sequence in failing:
            raise ProcessingError(address.card_number, address.side.value, ValueError('corrupt'))
        validation = CropValidation(False, 'Width 10px outside expected range') if sequence in invalid else CropValidation(True)
        return ProcessedCard(
            filename=generate_filename(address.card_number, address.side, options.image_format),
            data=raw,
            region=CropRegion(0, 0, 32, 32),
            validation=validation,
        )

    return processor


class RecordingWriter:
    def __init__(self):
        self.names = []

    def __call__(self, path, data):
        self.names.append(path.name)
        return fs.write_atomic(path, data)


@pytest.fixture
def settings(tmp_path):
    return ScanSettings(
        device_id='fake:0',
        output_directory=tmp_path / 'out',
        journal_path=tmp_path / 'journal.jsonl',
    )


async def collect_until_complete(orchestrator):
    events = []
    while True:
        event = await asyncio.wait_for(orchestrator.events.get(), timeout=5)
        events.append(event)
        if isinstance(event, CompleteEvent):
            break
    await orchestrator.wait_closed()
    return events


@pytest.mark.asyncio
async def test_batch_writes_cards_in_page_order(settings):
    controller = FakeController([captured(n) for n in range(1, 5)] + [CaptureFinished(page_count=4)])
    writer = RecordingWriter()
    # later pages finish processing first
    orchestrator = BatchOrchestrator(
        settings,
        controller=controller,
        processor=make_processor(delays={1: 0.06, 2: 0.04, 3: 0.02}),
        writer=writer,
    )

    message = await orchestrator.start('Box1')
    assert message == 'Scan started for batch: Box1'
    assert orchestrator.is_capturing()
    events = await collect_until_complete(orchestrator)

    assert writer.names == ['0001F.png', '0001B.png', '0002F.png', '0002B.png']
    progress = [e for e in events if isinstance(e, ProgressEvent)]
    assert [e.current for e in progress] == [1, 1, 2, 2]
    assert [e.filename for e in progress] == writer.names
    assert all(e.preview for e in progress)

    complete = events[-1]
    assert complete.success
    assert complete.card_count == 2
    assert complete.message == f"Scanned 2 cards to {settings.output_directory / 'Box1'}"
    assert sorted(p.name for p in (settings.output_directory / 'Box1').iterdir()) == sorted(writer.names)
    assert orchestrator.events.empty()
    assert not orchestrator.is_capturing()
    assert orchestrator.state is None

    steps = [json.loads(line)['step'] for line in settings.journal_path.read_text().splitlines()]
    assert steps[0] == 'start'
    assert steps[-1] == 'complete'
    assert steps.count('page') == 4


@pytest.mark.asyncio
async def test_second_start_is_rejected_and_leaves_batch_untouched(settings):
    controller = FakeController([captured(1), WAIT_FOR_STOP, CaptureFinished(page_count=1)])
    orchestrator = BatchOrchestrator(settings, controller=controller, processor=make_processor())

    await orchestrator.start('Box1')
    state = orchestrator.state
    with pytest.raises(BatchConflictError):
        await orchestrator.start('Box2')

    assert orchestrator.state is state
    assert state.batch_name == 'Box1'
    assert not (settings.output_directory / 'Box2').exists()

    orchestrator.stop()
    events = await collect_until_complete(orchestrator)

    assert [type(e) for e in events].count(CompleteEvent) == 1
    assert events[-1].success
    assert events[-1].card_count == 1
    assert orchestrator.events.empty()


@pytest.mark.asyncio
async def test_page_failure_does_not_stop_batch(settings):
    controller = FakeController([captured(n) for n in range(1, 4)] + [CaptureFinished(page_count=3)])
    writer = RecordingWriter()
    orchestrator = BatchOrchestrator(
        settings, controller=controller, processor=make_processor(failing={2}), writer=writer
    )

    await orchestrator.start('Box1')
    events = await collect_until_complete(orchestrator)

    errors = [e for e in events if isinstance(e, ErrorEvent)]
    assert [(e.message, e.sequence) for e in errors] == [('Failed to process card 1B', 2)]
    assert writer.names == ['0001F.png', '0002F.png']
    assert events[-1].success
    assert events[-1].card_count == 2


@pytest.mark.asyncio
async def test_write_failure_is_reported_per_page(settings):
    controller = FakeController([captured(1), captured(2), CaptureFinished(page_count=2)])

    def writer(path, data):
        if path.name == '0001F.png':
            raise OSError('disk full')
        return fs.write_atomic(path, data)

    orchestrator = BatchOrchestrator(settings, controller=controller, processor=make_processor(), writer=writer)
    await orchestrator.start('Box1')
    events = await collect_until_complete(orchestrator)

    assert any(isinstance(e, ErrorEvent) and e.sequence == 1 for e in events)
    assert events[-1].success
    assert events[-1].card_count == 0


@pytest.mark.asyncio
async def test_capture_failure_ends_with_single_failed_complete(settings):
    failure = CaptureFailure(9, 'paper jam')
    controller = FakeController([captured(1), CaptureFinished(page_count=1, error=failure)])
    orchestrator = BatchOrchestrator(settings, controller=controller, processor=make_processor())

    await orchestrator.start('Box1')
    events = await collect_until_complete(orchestrator)

    assert isinstance(events[-2], ErrorEvent)
    assert events[-2].message == 'Scanner exited with code 9: paper jam'
    complete = events[-1]
    assert not complete.success
    assert complete.card_count == 1
    assert complete.message == 'Scanner exited with code 9: paper jam'
    assert orchestrator.events.empty()


@pytest.mark.asyncio
async def test_crop_warnings_are_logged(settings, caplog):
    controller = FakeController([captured(1), CaptureFinished(page_count=1)])
    orchestrator = BatchOrchestrator(settings, controller=controller, processor=make_processor(invalid={1}))

    with caplog.at_level(logging.WARNING, logger='cardbatch.orchestrator'):
        await orchestrator.start('Box1')
        events = await collect_until_complete(orchestrator)

    assert events[-1].success
    assert '[Card 1F] Crop warning: Width 10px' in caplog.text


@pytest.mark.asyncio
@pytest.mark.parametrize('name', ['', '  ', 'a/b', None])
async def test_invalid_batch_name(settings, name):
    orchestrator = BatchOrchestrator(settings, controller=FakeController())
    with pytest.raises(InvalidBatchNameError):
        await orchestrator.start(name)
    assert not orchestrator.is_capturing()
    assert orchestrator.events.empty()


@pytest.mark.asyncio
async def test_start_requires_selected_scanner(settings):
    orchestrator = BatchOrchestrator(settings.updated(device_id=''), controller=FakeController())
    with pytest.raises(ConfigurationError):
        await orchestrator.start('Box1')
    assert not orchestrator.is_capturing()


@pytest.mark.asyncio
async def test_device_error_on_start_is_raised(settings):
    controller = FakeController(open_error=ScannerNotFoundError('scanimage not found'))
    orchestrator = BatchOrchestrator(settings, controller=controller)

    with pytest.raises(ScannerNotFoundError):
        await orchestrator.start('Box1')

    assert not orchestrator.is_capturing()
    assert orchestrator.events.empty()
    # a new batch can be started afterwards
    controller.open_error = None
    controller.script = [CaptureFinished(page_count=0)]
    await orchestrator.start('Box1')
    events = await collect_until_complete(orchestrator)
    assert events[-1].success
    assert events[-1].card_count == 0


@pytest.mark.asyncio
async def test_settings_and_devices(settings):
    orchestrator = BatchOrchestrator(settings, controller=FakeController())
    orchestrator.stop()

    updated = orchestrator.set_settings(dpi=300)
    assert updated.dpi == 300
    assert orchestrator.get_settings() is updated

    devices = await orchestrator.list_devices()
    assert devices[0].model == 'ADS-1000'


@pytest.mark.asyncio
async def test_unexpected_open_error_resets_state(settings):
    controller = FakeController(open_error=PermissionError('scratch dir not writable'))
    orchestrator = BatchOrchestrator(settings, controller=controller, processor=make_processor())

    with pytest.raises(PermissionError):
        await orchestrator.start('Box1')

    assert not orchestrator.is_capturing()
    assert orchestrator.state is None
    controller.open_error = None
    controller.script = [CaptureFinished(page_count=0)]
    assert await orchestrator.start('Box2') == 'Scan started for batch: Box2'
    events = await collect_until_complete(orchestrator)
    assert events[-1].success


@pytest.mark.asyncio
async def test_settings_changes_reach_default_controller(settings):
    orchestrator = BatchOrchestrator(settings)

    orchestrator.set_settings(scanner_command='/opt/sane/bin/scanimage', drain_attempts=25, poll_interval=0.5)

    controller = orchestrator.controller
    assert controller.command == '/opt/sane/bin/scanimage'
    assert controller.drain_attempts == 25
    assert controller.poll_interval == 0.5


@pytest.mark.asyncio
async def test_injected_controller_is_kept_across_settings_changes(settings):
    controller = FakeController()
    orchestrator = BatchOrchestrator(settings, controller=controller)
    orchestrator.set_settings(drain_attempts=25)
    assert orchestrator.controller is controller
