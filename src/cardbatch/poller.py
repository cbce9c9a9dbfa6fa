"""Discovery of page files written by the scanner into its scratch directory."""

from __future__ import annotations

import asyncio
import io
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Set, Tuple

from PIL import Image

from .models import Page
from .naming import parse_page_number

LOGGER = logging.getLogger(__name__)

PageSink = Callable[[Page], Awaitable[None]]


def read_complete_page(path: Path) -> bytes:
    """Read a page file, failing if the image is still being written."""

    data = Path(path).read_bytes()
    with Image.open(io.BytesIO(data)) as img:
        img.verify()
    return data


@dataclass(frozen=True)
class DrainReport:
    emitted: int
    attempts: int
    unread: Tuple[int, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.unread


class PagePoller:
    """Periodically lists a scratch directory and emits each page once."""

    def __init__(
        self,
        directory: Path,
        *,
        interval: float = 0.2,
        drain_attempts: int = 10,
        drain_idle_limit: int = 3,
        reader: Callable[[Path], bytes] = read_complete_page,
    ) -> None:
        self.directory = Path(directory)
        self.interval = interval
        self.drain_attempts = drain_attempts
        self.drain_idle_limit = drain_idle_limit
        self._reader = reader
        self._emitted: Set[int] = set()
        self._halted = asyncio.Event()

    @property
    def emitted(self) -> Set[int]:
        return set(self._emitted)

    def discover(self) -> Dict[int, Path]:
        try:
            names = os.listdir(self.directory)
        except FileNotFoundError:
            return {}
        found: Dict[int, Path] = {}
        for name in names:
            number = parse_page_number(name)
            if number is not None:
                found[number] = self.directory / name
        return found

    async def poll_once(self) -> List[Page]:
        """Read every discovered page not yet emitted, in ascending order."""

        pages: List[Page] = []
        for number, path in sorted(self.discover().items()):
            if number in self._emitted:
                continue
            try:
                data = await asyncio.to_thread(self._reader, path)
            except (OSError, SyntaxError, ValueError) as exc:
                LOGGER.debug("Page %d not ready yet: %s", number, exc)
                continue
            self._emitted.add(number)
            pages.append(Page(sequence=number, data=data))
        return pages

    async def run(self, emit: PageSink) -> None:
        """Poll until :meth:`halt` is called."""

        while not self._halted.is_set():
            for page in await self.poll_once():
                await emit(page)
            try:
                await asyncio.wait_for(self._halted.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def halt(self) -> None:
        self._halted.set()

    async def drain(self, emit: PageSink) -> DrainReport:
        """Collect trailing pages after the producer has exited.

        Stops once every discovered file has been emitted, or gives up after
        ``drain_idle_limit`` consecutive polls without a new page.
        """

        idle = 0
        attempts = 0
        pending: List[int] = []
        for attempts in range(1, self.drain_attempts + 1):
            pages = await self.poll_once()
            for page in pages:
                await emit(page)
            pending = sorted(set(self.discover()) - self._emitted)
            if not pending:
                return DrainReport(emitted=len(self._emitted), attempts=attempts)
            idle = 0 if pages else idle + 1
            if idle >= self.drain_idle_limit:
                break
            await asyncio.sleep(self.interval)
        LOGGER.warning(
            "Drain gave up after %d attempt(s); unread pages: %s",
            attempts,
            ", ".join(str(n) for n in pending),
        )
        return DrainReport(emitted=len(self._emitted), attempts=attempts, unread=tuple(pending))
