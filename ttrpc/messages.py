"""Wire messages exchanged by ttrpc peers, encoded in the protobuf format."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterator, Union

_U64 = (1 << 64) - 1

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LEN = 2
_WIRE_FIXED32 = 5


class DecodeError(ValueError):
    """Raised when bytes are not a valid encoding of a message."""


class Code(enum.IntEnum):
    """Status codes carried in a response status."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


def _encode_varint(value: int) -> bytes:
    value &= _U64
    out = bytearray()
    while True:
        bits = value & 0x7F
        value >>= 7
        if value:
            out.append(bits | 0x80)
        else:
            out.append(bits)
            return bytes(out)


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    for shift in range(0, 70, 7):
        if pos >= len(data):
            raise DecodeError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _U64, pos
    raise DecodeError("varint is too long")


def _read_fixed(data: bytes, pos: int, width: int) -> tuple[int, int]:
    end = pos + width
    if end > len(data):
        raise DecodeError("truncated fixed-width field")
    return int.from_bytes(data[pos:end], "little"), end


def _iter_fields(data: bytes) -> Iterator[tuple[int, int, Union[int, bytes]]]:
    data = bytes(data)
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire = key >> 3, key & 7
        if number == 0:
            raise DecodeError("invalid field number 0")
        value: Union[int, bytes]
        if wire == _WIRE_VARINT:
            value, pos = _read_varint(data, pos)
        elif wire == _WIRE_FIXED64:
            value, pos = _read_fixed(data, pos, 8)
        elif wire == _WIRE_FIXED32:
            value, pos = _read_fixed(data, pos, 4)
        elif wire == _WIRE_LEN:
            length, pos = _read_varint(data, pos)
            end = pos + length
            if end > len(data):
                raise DecodeError("truncated length-delimited field")
            value = data[pos:end]
            pos = end
        else:
            raise DecodeError(f"unsupported wire type {wire}")
        yield number, wire, value


def _expect(wire: int, expected: int, name: str) -> None:
    if wire != expected:
        raise DecodeError(f"unexpected wire type {wire} for field {name}")


def _as_string(value: Union[int, bytes], wire: int, name: str) -> str:
    _expect(wire, _WIRE_LEN, name)
    assert isinstance(value, bytes)
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"field {name} is not valid UTF-8") from exc


def _as_bytes(value: Union[int, bytes], wire: int, name: str) -> bytes:
    _expect(wire, _WIRE_LEN, name)
    assert isinstance(value, bytes)
    return value


def _as_varint(value: Union[int, bytes], wire: int, name: str) -> int:
    _expect(wire, _WIRE_VARINT, name)
    assert isinstance(value, int)
    return value


def _to_int64(value: int) -> int:
    value &= _U64
    return value - (1 << 64) if value >= 1 << 63 else value


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value >= 1 << 31 else value


def _key(number: int, wire: int) -> bytes:
    return _encode_varint(number << 3 | wire)


def _put_varint(out: bytearray, number: int, value: int) -> None:
    if value:
        out += _key(number, _WIRE_VARINT)
        out += _encode_varint(value)


def _put_len(out: bytearray, number: int, data: bytes, *, always: bool = False) -> None:
    if data or always:
        out += _key(number, _WIRE_LEN)
        out += _encode_varint(len(data))
        out += data


def _put_string(out: bytearray, number: int, text: str) -> None:
    _put_len(out, number, text.encode("utf-8"))


def _to_code(value: int) -> Union[Code, int]:
    try:
        return Code(value)
    except ValueError:
        return value


@dataclass
class KeyValue:
    """A metadata entry attached to a request."""

    key: str = ""
    value: str = ""

    def encode(self) -> bytes:
        out = bytearray()
        _put_string(out, 1, self.key)
        _put_string(out, 2, self.value)
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> "KeyValue":
        kv = cls()
        for number, wire, value in _iter_fields(data):
            match number:
                case 1:
                    kv.key = _as_string(value, wire, "key")
                case 2:
                    kv.value = _as_string(value, wire, "value")
        return kv


@dataclass
class Status:
    """Outcome of a call: a code, a message and encoded detail messages."""

    code: Union[Code, int] = Code.OK
    message: str = ""
    details: list[bytes] = field(default_factory=list)

    def encode(self) -> bytes:
        out = bytearray()
        _put_varint(out, 1, int(self.code))
        _put_string(out, 2, self.message)
        for detail in self.details:
            _put_len(out, 3, detail, always=True)
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> "Status":
        status = cls()
        for number, wire, value in _iter_fields(data):
            match number:
                case 1:
                    status.code = _to_code(_to_int32(_as_varint(value, wire, "code")))
                case 2:
                    status.message = _as_string(value, wire, "message")
                case 3:
                    status.details.append(_as_bytes(value, wire, "details"))
        return status


@dataclass
class Request:
    """A call of one method of one service."""

    service: str = ""
    method: str = ""
    payload: bytes = b""
    timeout_nano: int = 0
    metadata: list[KeyValue] = field(default_factory=list)

    def encode(self) -> bytes:
        out = bytearray()
        _put_string(out, 1, self.service)
        _put_string(out, 2, self.method)
        _put_len(out, 3, bytes(self.payload))
        _put_varint(out, 4, self.timeout_nano)
        for entry in self.metadata:
            _put_len(out, 5, entry.encode(), always=True)
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> "Request":
        req = cls()
        for number, wire, value in _iter_fields(data):
            match number:
                case 1:
                    req.service = _as_string(value, wire, "service")
                case 2:
                    req.method = _as_string(value, wire, "method")
                case 3:
                    req.payload = _as_bytes(value, wire, "payload")
                case 4:
                    req.timeout_nano = _to_int64(_as_varint(value, wire, "timeout_nano"))
                case 5:
                    req.metadata.append(KeyValue.decode(_as_bytes(value, wire, "metadata")))
        return req

    def size(self) -> int:
        return len(self.encode())


@dataclass
class Response:
    """The answer to a request: a status and the encoded result."""

    status: Status | None = None
    payload: bytes = b""

    def encode(self) -> bytes:
        out = bytearray()
        if self.status is not None:
            _put_len(out, 1, self.status.encode(), always=True)
        _put_len(out, 2, bytes(self.payload))
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> "Response":
        res = cls()
        for number, wire, value in _iter_fields(data):
            match number:
                case 1:
                    res.status = Status.decode(_as_bytes(value, wire, "status"))
                case 2:
                    res.payload = _as_bytes(value, wire, "payload")
        return res

    def size(self) -> int:
        return len(self.encode())