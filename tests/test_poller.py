import asyncio
import logging

import pytest

from cardbatch.poller import PagePoller, read_complete_page

from conftest import png_bytes


def _write_page(directory, number, data=None):
    path = directory / f'page{number:04d}.png'
    path.write_bytes(data if data is not None else png_bytes())
    return path


def test_read_complete_page_rejects_truncated_file(tmp_path):
    good = _write_page(tmp_path, 1)
    assert read_complete_page(good) == good.read_bytes()

    partial = _write_page(tmp_path, 2, png_bytes()[:20])
    with pytest.raises((OSError, SyntaxError, ValueError)):
        read_complete_page(partial)


def test_discover_ignores_other_files(tmp_path):
    _write_page(tmp_path, 2)
    (tmp_path / 'page0003.png.part').write_bytes(b'')
    (tmp_path / 'notes.txt').write_text('x')
    poller = PagePoller(tmp_path)
    assert list(poller.discover()) == [2]
    assert PagePoller(tmp_path / 'gone').discover() == {}


@pytest.mark.asyncio
async def test_poll_once_emits_each_page_once_in_order(tmp_path):
    _write_page(tmp_path, 3)
    _write_page(tmp_path, 1)
    poller = PagePoller(tmp_path)

    first = await poller.poll_once()
    again = await poller.poll_once()
    _write_page(tmp_path, 2)
    late = await poller.poll_once()

    assert [p.sequence for p in first] == [1, 3]
    assert again == []
    assert [p.sequence for p in late] == [2]
    assert poller.emitted == {1, 2, 3}


@pytest.mark.asyncio
async def test_partial_page_is_retried_later(tmp_path):
    full = png_bytes()
    path = _write_page(tmp_path, 1, full[:30])
    poller = PagePoller(tmp_path)

    assert await poller.poll_once() == []
    path.write_bytes(full)
    pages = await poller.poll_once()

    assert [p.sequence for p in pages] == [1]
    assert pages[0].data == full


@pytest.mark.asyncio
async def test_run_polls_until_halted(tmp_path):
    poller = PagePoller(tmp_path, interval=0.01)
    seen = []

    async def emit(page):
        seen.append(page.sequence)
        if len(seen) == 2:
            poller.halt()

    task = asyncio.create_task(poller.run(emit))
    _write_page(tmp_path, 1)
    await asyncio.sleep(0.05)
    _write_page(tmp_path, 2)
    await asyncio.wait_for(task, timeout=5)

    assert seen == [1, 2]


@pytest.mark.asyncio
async def test_drain_collects_trailing_pages(tmp_path):
    _write_page(tmp_path, 1)
    _write_page(tmp_path, 2)
    poller = PagePoller(tmp_path, interval=0.01)
    await poller.poll_once()
    _write_page(tmp_path, 3)
    seen = []

    async def emit(page):
        seen.append(page.sequence)

    report = await poller.drain(emit)

    assert seen == [3]
    assert report.complete
    assert report.emitted == 3
    assert report.attempts == 1


@pytest.mark.asyncio
async def test_drain_gives_up_on_unreadable_page(tmp_path, caplog):
    _write_page(tmp_path, 1)
    _write_page(tmp_path, 2, b'garbage')
    poller = PagePoller(tmp_path, interval=0.01, drain_attempts=10, drain_idle_limit=3)
    seen = []

    async def emit(page):
        seen.append(page.sequence)

    with caplog.at_level(logging.WARNING, logger='cardbatch.poller'):
        report = await poller.drain(emit)

    assert seen == [1]
    assert not report.complete
    assert report.unread == (2,)
    # one poll that found page 1, then three idle polls
    assert report.attempts == 4
    assert 'unread pages: 2' in caplog.text
