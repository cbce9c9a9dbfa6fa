"""Wrapper around the SANE ``scanimage`` command-line tool."""

from __future__ import annotations

import asyncio
import logging
import re
import signal
import tempfile
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional

from . import fs
from .errors import CaptureFailure, DeviceError, DevicePermissionError, ScannerNotFoundError
from .events import SessionClosed, SessionEvent, SessionProcessError
from .models import ScannerDevice, ScanOptions
from .naming import PAGE_PATTERN
from .processing import CARD_HEIGHT_MM, CARD_WIDTH_MM

LOGGER = logging.getLogger(__name__)

# SANE_STATUS_NO_DOCS: the feeder ran empty, which is how an ADF batch ends.
EXIT_NO_DOCS = 7
EXIT_CANCELLED = 2
NORMAL_EXIT_STATUSES = frozenset({0, EXIT_NO_DOCS})
STOPPED_EXIT_STATUSES = frozenset({EXIT_CANCELLED, -signal.SIGTERM})

# scanimage prints a backtick before the id; plain quotes show up in some builds.
_DEVICE_RE = re.compile(r"device [`']([^']+)' is a (.+)")
_MODEL_RE = re.compile(r"(\S+-\S+)")

_NOT_INSTALLED = "scanimage not found. Install the sane-utils package."
_PERMISSION_HINT = (
    'Permission denied. Add your user to the "scanner" group: sudo usermod -aG scanner $USER'
)


def parse_device_list(output: str) -> List[ScannerDevice]:
    devices: List[ScannerDevice] = []
    for line in output.splitlines():
        m = _DEVICE_RE.search(line)
        if not m:
            continue
        device_id, description = m.group(1), m.group(2).strip()
        model = _MODEL_RE.search(description)
        devices.append(
            ScannerDevice(
                id=device_id,
                name=description,
                model=model.group(1) if model else description,
            )
        )
    return devices


def scanner_brightness_value(value: int) -> int:
    """Map the -50..50 UI range onto the tool's -127..127 range."""

    return round(value * 2.54)


def build_scan_args(options: ScanOptions, scratch_dir: Path) -> List[str]:
    args = [
        "-d",
        options.device_id,
        "--resolution",
        str(options.dpi),
        "--mode",
        "Color",
        "--format",
        "png",
        f"--batch={Path(scratch_dir) / PAGE_PATTERN}",
        "--batch-start=1",
        "--source",
        "Adf-duplex" if options.duplex else "Adf-front",
        "--page-width",
        str(CARD_WIDTH_MM),
        "--page-height",
        str(CARD_HEIGHT_MM),
        "--swcrop=yes",
    ]
    tone = options.tone
    if tone is not None and not tone.is_neutral:
        args += [
            f"--brightness={scanner_brightness_value(tone.brightness)}",
            f"--contrast={scanner_brightness_value(tone.contrast)}",
            f"--gamma={tone.gamma:g}",
        ]
    return args


def exit_status_error(exit_status: Optional[int], detail: str = "") -> Optional[CaptureFailure]:
    """Return the failure for an exit status, or None for a normal finish."""

    if exit_status in NORMAL_EXIT_STATUSES:
        return None
    return CaptureFailure(exit_status, detail)


async def list_devices(command: str = "scanimage") -> List[ScannerDevice]:
    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            "-L",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ScannerNotFoundError(_NOT_INSTALLED) from exc
    except OSError as exc:
        raise DeviceError(f"Could not run {command}: {exc}") from exc

    stdout, stderr = await proc.communicate()
    out_text = stdout.decode(errors="replace")
    err_text = stderr.decode(errors="replace")
    if proc.returncode != 0 and "permission denied" in err_text.lower():
        raise DevicePermissionError(_PERMISSION_HINT)
    devices = parse_device_list(out_text)
    LOGGER.info("Found %d scanner(s)", len(devices))
    return devices


class DeviceSession:
    """One invocation of the scanning tool writing pages to a scratch directory.

    Lifecycle signals are posted to ``events``: exactly one
    :class:`SessionClosed` or :class:`SessionProcessError` per session.
    """

    STDERR_TAIL = 20

    def __init__(self, options: ScanOptions, *, command: str = "scanimage") -> None:
        self.options = options
        self.command = command
        self.events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self.scratch_dir: Optional[Path] = None
        self.exit_status: Optional[int] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_tail: Deque[str] = deque(maxlen=self.STDERR_TAIL)
        self._tasks: List[asyncio.Task] = []
        self._stop_requested = False

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def last_error_line(self) -> str:
        return self._stderr_tail[-1] if self._stderr_tail else ""

    async def open(self) -> Path:
        if self._process is not None:
            raise DeviceError("Device session already open")
        try:
            self.scratch_dir = Path(tempfile.mkdtemp(prefix="cardbatch-"))
        except OSError as exc:
            raise DeviceError(f"Could not create scratch directory: {exc}") from exc
        args = build_scan_args(self.options, self.scratch_dir)
        LOGGER.info("Starting %s for device %s", self.command, self.options.device_id)
        LOGGER.debug("Scan arguments: %s", args)
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            self.events.put_nowait(SessionProcessError(SessionProcessError.NOT_INSTALLED, _NOT_INSTALLED))
            self.cleanup()
            raise ScannerNotFoundError(_NOT_INSTALLED) from exc
        except OSError as exc:
            self.events.put_nowait(SessionProcessError(SessionProcessError.SPAWN_FAILED, str(exc)))
            self.cleanup()
            raise DeviceError(f"Could not start {self.command}: {exc}") from exc

        self._tasks = [
            asyncio.create_task(self._read_stderr(), name="scanimage-stderr"),
            asyncio.create_task(self._watch_exit(), name="scanimage-exit"),
        ]
        return self.scratch_dir

    async def _read_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        async for raw in self._process.stderr:
            line = raw.decode(errors="replace").strip()
            if line:
                self._stderr_tail.append(line)
                LOGGER.debug("[scanimage] %s", line)

    async def _watch_exit(self) -> None:
        assert self._process is not None
        status = await self._process.wait()
        # Let the stderr reader collect the final lines before reporting.
        if self._tasks:
            await asyncio.gather(self._tasks[0], return_exceptions=True)
        self.exit_status = status
        LOGGER.info("%s exited with status %s", self.command, status)
        self.events.put_nowait(SessionClosed(status))

    def failure(self) -> Optional[CaptureFailure]:
        if self._stop_requested and self.exit_status in STOPPED_EXIT_STATUSES:
            return None
        return exit_status_error(self.exit_status, self.last_error_line)

    def stop(self) -> None:
        if self._stop_requested:
            return
        self._stop_requested = True
        if self.running:
            LOGGER.info("Sending SIGTERM to %s", self.command)
            try:
                self._process.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass

    def cleanup(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self.scratch_dir is not None:
            fs.remove_tree(self.scratch_dir)
            self.scratch_dir = None
