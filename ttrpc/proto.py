"""Framing of ttrpc messages: the fixed header and the payload that follows it."""

from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

from ttrpc.errors import OthersError, SocketError, TtrpcError, get_rpc_status
from ttrpc.messages import Code, Request

MESSAGE_HEADER_LENGTH = 10
MESSAGE_LENGTH_MAX = 4 << 20
DEFAULT_PAGE_SIZE = 4 << 10

MESSAGE_TYPE_REQUEST = 0x1
MESSAGE_TYPE_RESPONSE = 0x2
MESSAGE_TYPE_DATA = 0x3

FLAG_REMOTE_CLOSED = 0x1
FLAG_REMOTE_OPEN = 0x2
FLAG_NO_DATA = 0x4

_HEADER = struct.Struct(">IIBB")


class AsyncReader(Protocol):
    async def readexactly(self, n: int) -> bytes: ...


class AsyncWriter(Protocol):
    def write(self, data: bytes) -> object: ...

    async def drain(self) -> None: ...


class Codec(Protocol):
    def encode(self) -> bytes: ...

    def size(self) -> int: ...


C = TypeVar("C", bound=Codec)


def check_oversize(length: int, return_rpc_error: bool) -> None:
    """Raise if a message length exceeds the maximum message size."""
    if length > MESSAGE_LENGTH_MAX:
        msg = f"message length {length} exceed maximum message size of {MESSAGE_LENGTH_MAX}"
        if return_rpc_error:
            raise get_rpc_status(Code.INVALID_ARGUMENT, msg)
        raise OthersError(msg)


async def _read_exactly(reader: AsyncReader, n: int) -> bytes:
    try:
        return await reader.readexactly(n)
    except (asyncio.IncompleteReadError, OSError) as exc:
        raise SocketError(str(exc)) from exc


async def _write_all(writer: AsyncWriter, data: bytes) -> None:
    try:
        writer.write(data)
        await writer.drain()
    except OSError as exc:
        raise SocketError(str(exc)) from exc


async def _discard_message_body(reader: AsyncReader, length: int) -> None:
    remaining = length
    while remaining > 0:
        once = min(DEFAULT_PAGE_SIZE, remaining)
        await _read_exactly(reader, once)
        remaining -= once


@dataclass
class MessageHeader:
    """The ten-byte header in front of every message."""

    length: int = 0
    stream_id: int = 0
    message_type: int = 0
    flags: int = 0

    @classmethod
    def from_bytes(cls, buf: bytes) -> "MessageHeader":
        if len(buf) < MESSAGE_HEADER_LENGTH:
            raise ValueError(
                f"message header needs {MESSAGE_HEADER_LENGTH} bytes, got {len(buf)}"
            )
        length, stream_id, message_type, flags = _HEADER.unpack_from(bytes(buf))
        return cls(length, stream_id, message_type, flags)

    def to_bytes(self) -> bytes:
        return _HEADER.pack(self.length, self.stream_id, self.message_type, self.flags)

    __bytes__ = to_bytes

    @classmethod
    def new_request(cls, stream_id: int, length: int) -> "MessageHeader":
        return cls(length, stream_id, MESSAGE_TYPE_REQUEST, 0)

    @classmethod
    def new_response(cls, stream_id: int, length: int) -> "MessageHeader":
        return cls(length, stream_id, MESSAGE_TYPE_RESPONSE, 0)

    @classmethod
    def new_data(cls, stream_id: int, length: int) -> "MessageHeader":
        return cls(length, stream_id, MESSAGE_TYPE_DATA, 0)

    def add_flags(self, flags: int) -> None:
        self.flags |= flags

    async def write_to(self, writer: AsyncWriter) -> None:
        """Write the header and flush the writer."""
        writer.write(self.to_bytes())
        await writer.drain()

    @classmethod
    async def read_from(cls, reader: AsyncReader) -> "MessageHeader":
        """Read a header; a short read raises asyncio.IncompleteReadError."""
        content = await reader.readexactly(MESSAGE_HEADER_LENGTH)
        return cls.from_bytes(content)


class GenMessageReturnError(TtrpcError):
    """A message was read but must be answered with an error."""

    def __init__(self, header: MessageHeader, error: TtrpcError) -> None:
        super().__init__(header, error)
        self.header = header
        self.error = error

    def __str__(self) -> str:
        return f"{self.error} (stream {self.header.stream_id})"


@dataclass
class GenMessage:
    """A message whose payload is kept as raw bytes."""

    header: MessageHeader = field(default_factory=MessageHeader)
    payload: bytes = b""

    async def write_to(self, writer: AsyncWriter) -> None:
        try:
            await self.header.write_to(writer)
        except OSError as exc:
            raise SocketError(str(exc)) from exc
        await _write_all(writer, self.payload)

    @classmethod
    async def read_from(cls, reader: AsyncReader) -> "GenMessage":
        try:
            header = await MessageHeader.read_from(reader)
        except (asyncio.IncompleteReadError, OSError) as exc:
            raise SocketError(str(exc)) from exc

        try:
            check_oversize(header.length, True)
        except TtrpcError as exc:
            await _discard_message_body(reader, header.length)
            raise GenMessageReturnError(header, exc) from exc

        content = await _read_exactly(reader, header.length)
        return cls(header, content)

    def check(self) -> None:
        check_oversize(self.header.length, True)


@dataclass
class Message(Generic[C]):
    """A message whose payload is a decoded protobuf message."""

    header: MessageHeader
    payload: C

    @classmethod
    def new_request(cls, stream_id: int, payload: Request) -> "Message[Request]":
        size = payload.size()
        check_oversize(size, False)
        return cls(MessageHeader.new_request(stream_id, size), payload)  # type: ignore[arg-type]

    @classmethod
    def from_gen(cls, gen: GenMessage, payload_type: type) -> "Message":
        return cls(gen.header, payload_type.decode(gen.payload))

    def to_gen(self) -> GenMessage:
        return GenMessage(self.header, self.payload.encode())

    async def write_to(self, writer: AsyncWriter) -> None:
        try:
            await self.header.write_to(writer)
        except OSError as exc:
            raise SocketError(str(exc)) from exc
        try:
            content = self.payload.encode()
        except ValueError as exc:
            raise OthersError("Encode payload failed." + str(exc)) from exc
        await _write_all(writer, content)

    @classmethod
    async def read_from(cls, reader: AsyncReader, payload_type: type) -> "Message":
        """Read a message; an oversized body is discarded and an empty payload returned."""
        try:
            header = await MessageHeader.read_from(reader)
        except (asyncio.IncompleteReadError, OSError) as exc:
            raise SocketError(str(exc)) from exc

        try:
            check_oversize(header.length, True)
        except TtrpcError:
            await _discard_message_body(reader, header.length)
            content = b""
        else:
            content = await _read_exactly(reader, header.length)

        try:
            payload = payload_type.decode(content)
        except ValueError as exc:
            raise OthersError("Decode payload failed." + str(exc)) from exc
        return cls(header, payload)