from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

LISTING_ARGS = ["-listx"]
STDERR_TAIL_LINES = 20


class ProcessStartError(RuntimeError):
    """The tag listing process or its output pipe could not be created."""


class CatalogOutput(Protocol):
    async def read(self, n: int = -1) -> bytes:
        ...


class TagListingProcess(Protocol):
    stdout: CatalogOutput

    @property
    def returncode(self) -> int | None:
        ...

    def kill(self) -> None:
        ...

    async def wait(self) -> int:
        ...

    def stderr_tail(self) -> str:
        ...


ProcessLauncher = Callable[[str], Awaitable[TagListingProcess]]


class ExiftoolProcess:
    """A running ``exiftool -listx`` child with its stderr drained in the background."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        if process.stdout is None:
            raise ProcessStartError("Tag listing process has no stdout pipe.")
        self.stdout = process.stdout
        self._process = process
        self._stderr_lines: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_task = asyncio.ensure_future(self._drain_stderr())

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def _drain_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", "ignore").strip()
            if text:
                self._stderr_lines.append(text)

    def kill(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    async def wait(self) -> int:
        returncode = await self._process.wait()
        await self._stderr_task
        return returncode

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_lines)


async def launch_tag_listing(executable: str) -> ExiftoolProcess:
    argv = [executable, *LISTING_ARGS]
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise ProcessStartError(f"Failed to start {executable}: {exc}") from exc

    logger.debug("Started %s (pid %s)", " ".join(argv), process.pid)
    return ExiftoolProcess(process)


_reapers: set[asyncio.Task] = set()


async def _reap(process: TagListingProcess, *, killed: bool) -> int | None:
    try:
        returncode = await process.wait()
    except Exception as exc:
        logger.warning("Waiting for tag listing process failed: %s", exc)
        return None

    if killed:
        logger.info("Tag listing process killed (status %s)", returncode)
    elif returncode != 0:
        logger.warning(
            "Tag listing process exited with status %s: %s",
            returncode,
            process.stderr_tail() or "no stderr output",
        )
    return returncode


def reap_in_background(process: TagListingProcess, *, killed: bool = False) -> asyncio.Task:
    """Wait for the process without blocking the caller; the exit status is only logged."""

    task = asyncio.get_running_loop().create_task(_reap(process, killed=killed))
    _reapers.add(task)
    task.add_done_callback(_reapers.discard)
    return task
