import socket
import threading

import pytest

from ttrpc.channel import read_message, write_message
from ttrpc.errors import RpcStatusError, SocketError
from ttrpc.errors import SOCKET_DISCONNECTED
from ttrpc.messages import Code, Request
from ttrpc.net import PipeConnection
from ttrpc.proto import (
    MESSAGE_HEADER_LENGTH,
    MESSAGE_LENGTH_MAX,
    MESSAGE_TYPE_REQUEST,
    GenMessageReturnError,
    MessageHeader,
)

PROTOBUF_MESSAGE_HEADER = bytes([0x00, 0x0, 0x0, 67, 0x0, 0x12, 0x34, 0x56, 0x1, 0xEF])

PROTOBUF_REQUEST = bytes(
    [
        10, 17, 103, 114, 112, 99, 46, 84, 101, 115, 116, 83, 101, 114, 118, 105, 99, 101, 115, 18,
        4, 84, 101, 115, 116, 26, 9, 1, 2, 3, 4, 5, 6, 7, 8, 9, 32, 128, 218, 196, 9, 42, 24, 10,
        9, 116, 101, 115, 116, 95, 107, 101, 121, 49, 18, 11, 116, 101, 115, 116, 95, 118, 97, 108,
        117, 101, 49,
    ]
)


@pytest.fixture
def sockets():
    a, b = socket.socketpair()
    yield a, b
    a.close()
    b.close()


@pytest.fixture
def conns(sockets):
    a, b = sockets
    return PipeConnection(a), PipeConnection(b)


def test_round_trip(conns):
    left, right = conns
    header = MessageHeader.new_request(5, 3)
    write_message(left, header, b"abc")
    got_header, body = read_message(right)
    assert got_header == header
    assert body == b"abc"


def test_empty_payload_round_trip(conns):
    left, right = conns
    header = MessageHeader.new_response(9, 0)
    write_message(left, header, b"")
    assert read_message(right) == (header, b"")


def test_wire_bytes(sockets, conns):
    left, _ = conns
    _, raw = sockets
    header = MessageHeader.new_response(7, 3)
    write_message(left, header, b"abc")
    data = b""
    while len(data) < MESSAGE_HEADER_LENGTH + 3:
        data += raw.recv(64)
    assert data == b"\x00\x00\x00\x03\x00\x00\x00\x07\x02\x00abc"
    assert MessageHeader.from_bytes(data[:MESSAGE_HEADER_LENGTH]) == header
    assert header.to_bytes() == data[:MESSAGE_HEADER_LENGTH]


def test_reads_source_request(sockets, conns):
    raw, _ = sockets
    _, right = conns
    raw.sendall(PROTOBUF_MESSAGE_HEADER + PROTOBUF_REQUEST + b"\x00\x00")
    header, body = read_message(right)
    assert header.length == 67
    assert header.stream_id == 0x123456
    assert header.message_type == MESSAGE_TYPE_REQUEST
    assert header.flags == 0xEF
    assert body == PROTOBUF_REQUEST
    req = Request.decode(body)
    assert req.service == "grpc.TestServices"
    assert req.method == "Test"
    assert req.timeout_nano == 20 * 1000 * 1000


def test_oversized_message_is_discarded(conns):
    left, right = conns
    length = MESSAGE_LENGTH_MAX + 1
    big = MessageHeader.new_request(5, length)
    follow = MessageHeader.new_request(7, 2)

    def writer():
        write_message(left, big, bytes(length))
        write_message(left, follow, b"ok")

    thread = threading.Thread(target=writer)
    thread.start()
    with pytest.raises(GenMessageReturnError) as info:
        read_message(right)
    assert info.value.header == big
    assert isinstance(info.value.error, RpcStatusError)
    assert info.value.error.code == Code.INVALID_ARGUMENT
    assert read_message(right) == (follow, b"ok")
    thread.join(timeout=10)
    assert not thread.is_alive()


def test_disconnected_peer(sockets, conns):
    raw, _ = sockets
    _, right = conns
    raw.close()
    with pytest.raises(SocketError) as info:
        read_message(right)
    assert info.value.message == SOCKET_DISCONNECTED


def test_short_header(sockets, conns):
    raw, _ = sockets
    _, right = conns
    raw.sendall(PROTOBUF_MESSAGE_HEADER[:5])
    raw.shutdown(socket.SHUT_WR)
    with pytest.raises(RpcStatusError) as info:
        read_message(right)
    assert info.value.code == Code.INVALID_ARGUMENT


def test_short_body(sockets, conns):
    raw, _ = sockets
    _, right = conns
    raw.sendall(PROTOBUF_MESSAGE_HEADER + PROTOBUF_REQUEST[:10])
    raw.shutdown(socket.SHUT_WR)
    with pytest.raises(RpcStatusError) as info:
        read_message(right)
    assert info.value.code == Code.INVALID_ARGUMENT


def test_write_on_closed_connection(conns):
    left, _ = conns
    left.close()
    with pytest.raises(SocketError):
        write_message(left, MessageHeader.new_request(1, 1), b"x")