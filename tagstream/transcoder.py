"""Streams the tag catalog of a running listing process as a JSON document."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable

from tagstream.catalog_parser import CatalogStreamError, TableDecodeError, TableSplitter, decode_table
from tagstream.config import DEFAULT_READ_SIZE
from tagstream.schema_models import TagRecord
from tagstream.tag_process import CatalogOutput, TagListingProcess, reap_in_background

logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.5


class JsonArrayWriter:
    """Writes ``{"<key>":[`` ... ``]}`` one element at a time, owning the separators."""

    def __init__(self, key: str = "tags") -> None:
        self.key = key
        self.count = 0

    def open(self) -> bytes:
        return ("{" + json.dumps(self.key) + ":[").encode("utf-8")

    def element(self, record: TagRecord) -> bytes:
        separator = b"," if self.count else b""
        self.count += 1
        return separator + record.model_dump_json().encode("utf-8")

    def close(self) -> bytes:
        return b"]}"


class CancellationScope:
    """A cancellation signal that can be tied to a client disconnect probe.

    ``cancel()`` fires it directly. When ``is_disconnected`` is given, entering
    the scope starts a watcher that polls the probe and fires the scope once
    the client is gone.
    """

    def __init__(
        self,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        *,
        poll_interval: float = DISCONNECT_POLL_SECONDS,
    ) -> None:
        self._event = asyncio.Event()
        self._is_disconnected = is_disconnected
        self._poll_interval = poll_interval
        self._watcher: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def _watch(self) -> None:
        while not self._event.is_set():
            if await self._is_disconnected():
                logger.debug("Client disconnected")
                self._event.set()
                return
            await asyncio.sleep(self._poll_interval)

    async def __aenter__(self) -> CancellationScope:
        if self._is_disconnected is not None:
            self._watcher = asyncio.ensure_future(self._watch())
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
        self._watcher = None


async def _next_chunk(stdout: CatalogOutput, read_size: int, scope: CancellationScope) -> bytes | None:
    """Race the next stdout read against cancellation; ``None`` means cancelled."""

    if scope.cancelled:
        return None

    read_task = asyncio.ensure_future(stdout.read(read_size))
    cancel_task = asyncio.ensure_future(scope.wait())
    try:
        await asyncio.wait({read_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (read_task, cancel_task):
            if not task.done():
                task.cancel()

    if scope.cancelled:
        return None
    return read_task.result()


def _decode_fragments(fragments: list[bytes]) -> list[TagRecord]:
    records: list[TagRecord] = []
    for fragment in fragments:
        try:
            table = decode_table(fragment)
        except TableDecodeError as exc:
            logger.warning("Skipping table: %s", exc)
            continue
        records.extend(table.to_records())
    return records


class TagCatalogStream:
    """The body of ``{"tags":[...]}`` read from a running listing process.

    Iterating yields the opening bytes before any output is read, then one
    chunk per record, then the closing bytes at end of input. On
    cancellation, or when the catalog turns out to be malformed outside a
    table, the process is killed and the body is left unterminated.

    The stream owns the process: it is killed if still running and reaped in
    the background exactly once, whether iteration finished, failed, or was
    closed with :meth:`aclose` before it ever started.
    """

    def __init__(
        self,
        process: TagListingProcess,
        *,
        scope: CancellationScope | None = None,
        read_size: int = DEFAULT_READ_SIZE,
    ) -> None:
        self.process = process
        self.scope = scope or CancellationScope()
        self.read_size = read_size
        self.writer = JsonArrayWriter()
        self.reaper: asyncio.Task | None = None
        self._completed = False
        self._chunks = self._generate()

    def __aiter__(self) -> TagCatalogStream:
        return self

    async def __anext__(self) -> bytes:
        return await self._chunks.__anext__()

    async def aclose(self) -> None:
        await self._chunks.aclose()
        self._release()

    def _release(self) -> None:
        if self.reaper is not None:
            return
        killed = not self._completed and self.process.returncode is None
        if killed:
            self.process.kill()
        self.reaper = reap_in_background(self.process, killed=killed)

    async def _generate(self) -> AsyncIterator[bytes]:
        writer = self.writer
        splitter = TableSplitter()

        try:
            async with self.scope:
                yield writer.open()
                while True:
                    chunk = await _next_chunk(self.process.stdout, self.read_size, self.scope)
                    if chunk is None:
                        logger.info("Tag catalog request cancelled after %s records", writer.count)
                        return
                    if not chunk:
                        splitter.close()
                        self._completed = True
                        yield writer.close()
                        logger.info("Streamed %s tag records", writer.count)
                        return
                    for record in _decode_fragments(splitter.feed(chunk)):
                        yield writer.element(record)
        except CatalogStreamError as exc:
            logger.error("Tag catalog is malformed, response truncated after %s records: %s", writer.count, exc)
        except asyncio.CancelledError:
            logger.info("Tag catalog stream interrupted after %s records", writer.count)
            raise
        finally:
            self._release()


def stream_tag_catalog(
    process: TagListingProcess,
    *,
    scope: CancellationScope | None = None,
    read_size: int = DEFAULT_READ_SIZE,
) -> TagCatalogStream:
    return TagCatalogStream(process, scope=scope, read_size=read_size)
