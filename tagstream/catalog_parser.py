"""Incremental decoding of the `exiftool -listx` tag catalog.

The catalog is one root element holding a long run of sibling ``<table>``
elements. The splitter cuts the byte stream into complete table fragments as
bytes arrive, and each fragment is parsed on its own, so a malformed table
costs only that table.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from tagstream.schema_models import TagRecord

_TABLE_START = re.compile(rb"<table[\s/>]")
_TABLE_END = re.compile(rb"</table\s*>")
# Start tag of a table, with ">" allowed inside quoted attribute values.
_TABLE_HEAD = re.compile(rb"<table(?:[^>'\"]|'[^']*'|\"[^\"]*\")*?(?P<empty>/?)>")
_UTF8_BOM = b"\xef\xbb\xbf"
# Longest closing tag we expect to straddle a chunk boundary, with slack for
# whitespace before the ">".
_SCAN_MARGIN = 16


class TableDecodeError(ValueError):
    """A single table element could not be decoded."""


class CatalogStreamError(ValueError):
    """The catalog stream is malformed outside any table element."""


@dataclass
class Tag:
    name: str
    type: str
    writable: bool
    descriptions: dict[str, str] = field(default_factory=dict)


@dataclass
class Table:
    name: str
    group: str
    tags: list[Tag] = field(default_factory=list)

    def to_records(self) -> list[TagRecord]:
        return [
            TagRecord(
                writable=tag.writable,
                path=f"{self.name}:{tag.name}",
                group=f"{self.group}::{self.name}",
                description=dict(tag.descriptions),
                type=tag.type,
            )
            for tag in self.tags
        ]


def _decode_tag(element: ET.Element) -> Tag:
    descriptions: dict[str, str] = {}
    for desc in element.findall("desc"):
        descriptions[desc.get("lang", "")] = "".join(desc.itertext())
    return Tag(
        name=element.get("name", ""),
        type=element.get("type", ""),
        writable=element.get("writable") == "true",
        descriptions=descriptions,
    )


def decode_table(fragment: bytes) -> Table:
    """Parse one complete ``<table>`` element into a :class:`Table`.

    Only direct ``tag`` children are read; unknown attributes and elements are
    ignored and missing attributes decode as empty strings.
    """

    try:
        element = ET.fromstring(fragment)
    except ET.ParseError as exc:
        raise TableDecodeError(f"Malformed table element: {exc}") from exc

    if element.tag != "table":
        raise TableDecodeError(f"Expected a table element, got '{element.tag}'.")

    return Table(
        name=element.get("name", ""),
        group=element.get("g0", ""),
        tags=[_decode_tag(child) for child in element.findall("tag")],
    )


class TableSplitter:
    """Cuts a byte stream into complete ``<table>`` element fragments.

    Feed chunks in arrival order with :meth:`feed`; each call returns the
    fragments completed by that chunk, in document order. Call :meth:`close`
    at end of input.

    Everything outside the tables is run through a pull parser, so the
    document around the tables must be well formed and its root element
    must be closed by the time :meth:`close` is called.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._outline = ET.XMLPullParser(events=())
        self._in_table = False
        self._seen_markup = False
        self._end_scan_from = 0
        self._pending_error: CatalogStreamError | None = None

    def feed(self, data: bytes) -> list[bytes]:
        self._raise_pending()
        self._buffer.extend(data)
        fragments: list[bytes] = []
        try:
            while True:
                if not self._in_table and not self._skip_to_table():
                    break
                fragment = self._take_table()
                if fragment is None:
                    break
                fragments.append(fragment)
        except CatalogStreamError as exc:
            if not fragments:
                raise
            # Hand out the tables completed before the error; raise on the next call.
            self._pending_error = exc
        return fragments

    def _raise_pending(self) -> None:
        if self._pending_error is not None:
            raise self._pending_error

    def close(self) -> None:
        self._raise_pending()
        if self._in_table:
            raise CatalogStreamError("Catalog output ended inside an unterminated table element.")
        if not self._seen_markup:
            self._buffer.clear()
            return
        self._feed_outline(self._buffer)
        self._buffer.clear()
        try:
            self._outline.close()
        except ET.ParseError as exc:
            raise CatalogStreamError(f"Catalog output is incomplete: {exc}") from exc

    def _feed_outline(self, region: bytes | bytearray) -> None:
        if not region:
            return
        try:
            self._outline.feed(bytes(region))
            # Syntax errors are queued by feed() and only raised here.
            for _ in self._outline.read_events():
                pass
        except ET.ParseError as exc:
            raise CatalogStreamError(f"Malformed markup outside table elements: {exc}") from exc

    def _check_markup(self) -> None:
        if self._seen_markup:
            return
        head = bytes(self._buffer).lstrip()
        if head.startswith(_UTF8_BOM):
            head = head[len(_UTF8_BOM):].lstrip()
        if not head:
            return
        if not head.startswith(b"<"):
            preview = head[:40].decode("utf-8", "replace")
            raise CatalogStreamError(f"Catalog output is not XML: '{preview}'")
        # The XML declaration is only legal at the very start of the document.
        self._buffer[:] = head
        self._seen_markup = True

    def _skip_to_table(self) -> bool:
        self._check_markup()
        if not self._seen_markup:
            return False

        match = _TABLE_START.search(self._buffer)
        if match is None:
            # Keep a possibly partial tag at the end of the buffer for the next chunk.
            cut = self._buffer.rfind(b"<", max(0, len(self._buffer) - _SCAN_MARGIN))
            if cut == -1:
                cut = len(self._buffer)
            self._feed_outline(self._buffer[:cut])
            del self._buffer[:cut]
            return False

        self._feed_outline(self._buffer[: match.start()])
        del self._buffer[: match.start()]
        self._in_table = True
        self._end_scan_from = 0
        return True

    def _take_table(self) -> bytes | None:
        head = _TABLE_HEAD.match(self._buffer)
        if head is None:
            return None

        if head.group("empty"):
            end = head.end()
        else:
            match = _TABLE_END.search(self._buffer, max(head.end(), self._end_scan_from))
            if match is None:
                self._end_scan_from = max(0, len(self._buffer) - _SCAN_MARGIN)
                return None
            end = match.end()

        fragment = bytes(self._buffer[:end])
        del self._buffer[:end]
        self._in_table = False
        return fragment
