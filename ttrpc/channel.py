"""Reading and writing whole framed messages over a connection."""

from __future__ import annotations

import logging
from typing import Protocol

from ttrpc.errors import SocketError, TtrpcError, sock_error_msg
from ttrpc.proto import (
    DEFAULT_PAGE_SIZE,
    MESSAGE_HEADER_LENGTH,
    GenMessageReturnError,
    MessageHeader,
    check_oversize,
)

log = logging.getLogger(__name__)


class Connection(Protocol):
    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes | memoryview) -> int: ...


def _read_count(conn: Connection, count: int) -> bytes:
    """Read count bytes, or fewer if the peer closes first."""
    received = bytearray()
    while len(received) < count:
        try:
            data = conn.read(count - len(received))
        except OSError as exc:
            raise SocketError(str(exc)) from exc
        if not data:
            break
        received += data
    return bytes(received)


def _write_count(conn: Connection, data: bytes) -> int:
    """Write all of data and return how many bytes went out."""
    view = memoryview(data)
    written = 0
    while written < len(view):
        try:
            sent = conn.write(view[written:])
        except OSError as exc:
            raise SocketError(str(exc)) from exc
        if sent == 0:
            break
        written += sent
    return written


def _discard_count(conn: Connection, count: int) -> None:
    remaining = count
    while remaining > 0:
        once = min(DEFAULT_PAGE_SIZE, remaining)
        _read_count(conn, once)
        remaining -= once


def _read_message_header(conn: Connection) -> MessageHeader:
    buf = _read_count(conn, MESSAGE_HEADER_LENGTH)
    size = len(buf)
    if size != MESSAGE_HEADER_LENGTH:
        raise sock_error_msg(size, f"Message header length {size} is too small")
    return MessageHeader.from_bytes(buf)


def read_message(conn: Connection) -> tuple[MessageHeader, bytes]:
    """Read one message and return its header and body.

    An oversized message has its body discarded and raises
    GenMessageReturnError, carrying the header and the error to answer with.
    """
    header = _read_message_header(conn)
    log.debug("Got Message header %r", header)

    try:
        check_oversize(header.length, True)
    except TtrpcError as exc:
        _discard_count(conn, header.length)
        raise GenMessageReturnError(header, exc) from exc

    body = _read_count(conn, header.length)
    size = len(body)
    if size != header.length:
        raise sock_error_msg(size, f"Message length {size} is not {header.length}")
    log.debug("Got Message body %r", body)
    return header, body


def write_message(conn: Connection, header: MessageHeader, payload: bytes) -> None:
    """Write a header followed by its payload."""
    size = _write_count(conn, header.to_bytes())
    if size != MESSAGE_HEADER_LENGTH:
        raise sock_error_msg(size, f"Send Message header length size {size} is not right")

    payload = bytes(payload)
    size = _write_count(conn, payload)
    if size != len(payload):
        raise sock_error_msg(size, f"Send Message length size {size} is not right")