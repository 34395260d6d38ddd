import asyncio

import pytest

from ttrpc.errors import OthersError, RpcStatusError, SocketError
from ttrpc.messages import Code, KeyValue, Request
from ttrpc.proto import (
    MESSAGE_HEADER_LENGTH,
    MESSAGE_LENGTH_MAX,
    MESSAGE_TYPE_DATA,
    MESSAGE_TYPE_REQUEST,
    MESSAGE_TYPE_RESPONSE,
    GenMessage,
    GenMessageReturnError,
    Message,
    MessageHeader,
    check_oversize,
)

MESSAGE_HEADER = bytes(
    [
        0x10, 0x0, 0x0, 0x0,
        0x0, 0x0, 0x0, 0x03,
        0x2,
        0xEF,
    ]
)

TEST_PAYLOAD_LEN = 67

PROTOBUF_MESSAGE_HEADER = bytes(
    [
        0x00, 0x0, 0x0, TEST_PAYLOAD_LEN,
        0x0, 0x12, 0x34, 0x56,
        0x1,
        0xEF,
    ]
)

PROTOBUF_REQUEST = bytes(
    [
        10, 17, 103, 114, 112, 99, 46, 84, 101, 115, 116, 83, 101, 114, 118, 105, 99, 101, 115, 18,
        4, 84, 101, 115, 116, 26, 9, 1, 2, 3, 4, 5, 6, 7, 8, 9, 32, 128, 218, 196, 9, 42, 24, 10,
        9, 116, 101, 115, 116, 95, 107, 101, 121, 49, 18, 11, 116, 101, 115, 116, 95, 118, 97, 108,
        117, 101, 49,
    ]
)


def new_protobuf_request() -> Request:
    return Request(
        service="grpc.TestServices",
        method="Test",
        timeout_nano=20 * 1000 * 1000,
        metadata=[KeyValue(key="test_key1", value="test_value1")],
        payload=bytes([0x1, 0x2, 0x3, 0x4, 0x5, 0x6, 0x7, 0x8, 0x9]),
    )


class _BufferWriter:
    def __init__(self):
        self.data = bytearray()

    def write(self, data):
        self.data += data

    async def drain(self):
        return None


class _ZeroPaddedReader:
    """Serves a prefix followed by a run of zero bytes without holding them all."""

    def __init__(self, head, zeros):
        self._head = bytearray(head)
        self.remaining_zeros = zeros

    async def readexactly(self, n):
        take = min(n, len(self._head))
        chunk = bytes(self._head[:take])
        del self._head[:take]
        rest = n - take
        if rest > self.remaining_zeros:
            raise asyncio.IncompleteReadError(chunk, n)
        self.remaining_zeros -= rest
        return chunk + bytes(rest)


def _stream_reader(data):
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


def test_message_header():
    mh = MessageHeader.from_bytes(MESSAGE_HEADER)
    assert mh.length == 0x1000_0000
    assert mh.stream_id == 0x3
    assert mh.message_type == MESSAGE_TYPE_RESPONSE
    assert mh.flags == 0xEF
    assert mh.to_bytes() == MESSAGE_HEADER
    assert bytes(mh) == MESSAGE_HEADER

    mh = MessageHeader.from_bytes(PROTOBUF_MESSAGE_HEADER)
    assert mh.length == TEST_PAYLOAD_LEN


def test_message_header_too_short():
    with pytest.raises(ValueError):
        MessageHeader.from_bytes(MESSAGE_HEADER[:5])


def test_header_constructors_and_flags():
    assert MessageHeader.new_request(7, 3) == MessageHeader(3, 7, MESSAGE_TYPE_REQUEST, 0)
    assert MessageHeader.new_response(7, 3).message_type == MESSAGE_TYPE_RESPONSE
    assert MessageHeader.new_data(7, 3).message_type == MESSAGE_TYPE_DATA
    mh = MessageHeader.new_request(1, 0)
    mh.flags = 0xE0
    mh.add_flags(0x0F)
    assert mh.flags == 0xEF


def test_check_oversize():
    assert check_oversize(MESSAGE_LENGTH_MAX, True) is None
    with pytest.raises(RpcStatusError) as excinfo:
        check_oversize(MESSAGE_LENGTH_MAX + 1, True)
    assert excinfo.value.code is Code.INVALID_ARGUMENT
    with pytest.raises(OthersError):
        check_oversize(MESSAGE_LENGTH_MAX + 1, False)


def test_gen_message_to_message():
    msg = Message.new_request(3, new_protobuf_request())
    gen = msg.to_gen()
    assert gen.payload == PROTOBUF_REQUEST
    assert Message.from_gen(gen, Request) == msg


def test_new_request_rejects_oversize_payload():
    with pytest.raises(OthersError):
        Message.new_request(1, Request(payload=bytes(MESSAGE_LENGTH_MAX + 1)))


def test_gen_message_check():
    assert GenMessage(MessageHeader.new_request(1, 10), bytes(10)).check() is None
    with pytest.raises(RpcStatusError) as excinfo:
        GenMessage(MessageHeader.from_bytes(MESSAGE_HEADER), b"").check()
    assert excinfo.value.code is Code.INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_async_message_header():
    writer = _BufferWriter()
    mh = MessageHeader.from_bytes(MESSAGE_HEADER)
    await mh.write_to(writer)
    assert bytes(writer.data) == MESSAGE_HEADER

    dmh = await MessageHeader.read_from(_stream_reader(bytes(writer.data)))
    assert dmh == mh


@pytest.mark.asyncio
async def test_async_gen_message_oversize():
    header = MessageHeader.from_bytes(MESSAGE_HEADER)
    reader = _ZeroPaddedReader(MESSAGE_HEADER, header.length)
    with pytest.raises(GenMessageReturnError) as excinfo:
        await GenMessage.read_from(reader)
    assert excinfo.value.header == header
    assert isinstance(excinfo.value.error, RpcStatusError)
    assert excinfo.value.error.code is Code.INVALID_ARGUMENT
    assert reader.remaining_zeros == 0


@pytest.mark.asyncio
async def test_async_gen_message():
    buf = PROTOBUF_MESSAGE_HEADER + PROTOBUF_REQUEST + b"\x00\x00"
    reader = _stream_reader(buf)
    gen = await GenMessage.read_from(reader)
    assert gen.header.length == TEST_PAYLOAD_LEN
    assert gen.header.length == len(gen.payload)
    assert gen.header.stream_id == 0x123456
    assert gen.header.message_type == MESSAGE_TYPE_REQUEST
    assert gen.header.flags == 0xEF
    assert gen.payload == PROTOBUF_REQUEST
    assert await reader.read() == b"\x00\x00"

    writer = _BufferWriter()
    await gen.write_to(writer)
    assert bytes(writer.data) == buf[: MESSAGE_HEADER_LENGTH + TEST_PAYLOAD_LEN]


@pytest.mark.asyncio
async def test_async_gen_message_truncated_body():
    reader = _stream_reader(PROTOBUF_MESSAGE_HEADER + PROTOBUF_REQUEST[:10])
    with pytest.raises(SocketError):
        await GenMessage.read_from(reader)


@pytest.mark.asyncio
async def test_async_gen_message_truncated_header():
    with pytest.raises(SocketError):
        await GenMessage.read_from(_stream_reader(MESSAGE_HEADER[:4]))


@pytest.mark.asyncio
async def test_async_message_oversize_gives_empty_payload():
    header = MessageHeader.from_bytes(MESSAGE_HEADER)
    reader = _ZeroPaddedReader(MESSAGE_HEADER, header.length)
    msg = await Message.read_from(reader, Request)
    assert msg.header == header
    assert msg.payload.size() == 0
    assert reader.remaining_zeros == 0


@pytest.mark.asyncio
async def test_async_message():
    buf = PROTOBUF_MESSAGE_HEADER + PROTOBUF_REQUEST + b"\x00\x00"
    msg = await Message.read_from(_stream_reader(buf), Request)
    assert msg.header.length == 67
    assert msg.header.length == msg.payload.size()
    assert msg.header.stream_id == 0x123456
    assert msg.header.message_type == MESSAGE_TYPE_REQUEST
    assert msg.header.flags == 0xEF
    assert msg.payload.service == "grpc.TestServices"
    assert msg.payload.method == "Test"
    assert msg.payload.payload == bytes([0x1, 0x2, 0x3, 0x4, 0x5, 0x6, 0x7, 0x8, 0x9])
    assert msg.payload.timeout_nano == 20 * 1000 * 1000
    assert len(msg.payload.metadata) == 1
    assert msg.payload.metadata[0].key == "test_key1"
    assert msg.payload.metadata[0].value == "test_value1"

    dmsg = Message.new_request(0xFFFFFFFF, new_protobuf_request())
    dmsg.header.stream_id = 0x123456
    dmsg.header.flags = 0xE0
    dmsg.header.add_flags(0x0F)
    writer = _BufferWriter()
    await dmsg.write_to(writer)
    assert bytes(writer.data) == buf[: MESSAGE_HEADER_LENGTH + TEST_PAYLOAD_LEN]


@pytest.mark.asyncio
async def test_async_message_bad_payload():
    body = bytes([10, 5, 97, 98])
    header = MessageHeader.new_request(1, len(body))
    with pytest.raises(OthersError) as excinfo:
        await Message.read_from(_stream_reader(header.to_bytes() + body), Request)
    assert excinfo.value.message.startswith("Decode payload failed.")