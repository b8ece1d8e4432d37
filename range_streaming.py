"""HTTP range-request handling for files served out of a download directory.

Media players seek by sending ``Range: bytes=<start>-<end>``; a wrong
``Content-Range`` or ``Content-Length`` makes most of them stall or give up.

Supported forms:
- no header: the whole file, status 200
- ``bytes=S-E`` and ``bytes=S-``: status 206
- ``bytes=-N``: the last N bytes, status 206
Anything else (other units, several ranges) is ignored and the whole file is
served, every time.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterator, Optional
from urllib.parse import quote

from flask import Response
from werkzeug.utils import secure_filename

from errors import BackendError, NotFound, RangeNotSatisfiable

log = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


class RangeParseError(ValueError):
    pass


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def validate_bounds(start: int, end: int, size: int) -> ByteRange:
    if start < 0 or end >= size or start > end:
        raise RangeNotSatisfiable(size)
    return ByteRange(start, end)


def parse_range_header(value: Optional[str], size: int) -> Optional[ByteRange]:
    """Parse a single-range ``Range`` header against a file of ``size`` bytes.

    Returns ``None`` when there is no header. Raises ``RangeParseError`` for a
    header this server does not understand and ``RangeNotSatisfiable`` for a
    well-formed range that falls outside the file.
    """
    if value is None or not value.strip():
        return None
    m = _RANGE_RE.match(value)
    if not m:
        raise RangeParseError(value)
    first, last = m.group(1), m.group(2)
    if not first and not last:
        raise RangeParseError(value)

    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(size)
        return validate_bounds(max(0, size - suffix), size - 1, size)

    start = int(first)
    end = int(last) if last else size - 1
    return validate_bounds(start, end, size)


def resolve_request_range(value: Optional[str], size: int) -> Optional[ByteRange]:
    try:
        return parse_range_header(value, size)
    except RangeParseError:
        log.debug("Ignoring unsupported Range header %r", value)
        return None


class ByteStream:
    """Iterable over ``length`` bytes of a file starting at ``start``.

    The file is opened on construction so that a missing file is reported
    before any response header goes out.
    """

    def __init__(self, path: str, start: int, length: int, chunk_size: int = CHUNK_SIZE) -> None:
        self.path = path
        self.start = start
        self.length = length
        self.chunk_size = chunk_size
        self._fh = open(path, "rb")
        try:
            self._fh.seek(start)
        except OSError:
            self.close()
            raise

    def __iter__(self) -> Iterator[bytes]:
        remaining = self.length
        try:
            while remaining > 0 and self._fh is not None:
                try:
                    chunk = self._fh.read(min(self.chunk_size, remaining))
                except OSError as e:
                    log.error("Read failed on %s at offset %d: %s", self.path, self.start + self.length - remaining, e)
                    return
                if not chunk:
                    log.warning("%s ended %d bytes early", self.path, remaining)
                    return
                remaining -= len(chunk)
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


@dataclass(frozen=True)
class ResolvedFile:
    """A ready, path-checked file that can be streamed."""

    path: str
    size: int
    mime_type: str
    name: str

    def open(self, byte_range: Optional[ByteRange] = None) -> ByteStream:
        if byte_range is None:
            start, length = 0, self.size
        else:
            start, length = byte_range.start, byte_range.length
        try:
            return ByteStream(self.path, start, length)
        except FileNotFoundError:
            log.error("File missing on disk: %s", self.path)
            raise NotFound("File not found")
        except OSError as e:
            log.error("Cannot open %s: %s", self.path, e)
            raise BackendError("File is not readable")


def content_disposition(name: str) -> str:
    simple = secure_filename(name) or "download"
    return f"attachment; filename=\"{simple}\"; filename*=UTF-8''{quote(name, safe='')}"


def build_stream_response(resolved: ResolvedFile, range_header: Optional[str], as_attachment: bool = False) -> Response:
    byte_range = resolve_request_range(range_header, resolved.size)
    body = resolved.open(byte_range)
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Length": str(body.length),
    }
    if byte_range is not None:
        headers["Content-Range"] = f"bytes {byte_range.start}-{byte_range.end}/{resolved.size}"
    if as_attachment:
        headers["Content-Disposition"] = content_disposition(resolved.name)
    return Response(
        body,
        status=206 if byte_range is not None else 200,
        headers=headers,
        content_type=resolved.mime_type,
        direct_passthrough=True,
    )
