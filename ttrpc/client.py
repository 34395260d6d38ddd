"""Synchronous ttrpc client: one connection shared by concurrent requests."""

from __future__ import annotations

import logging
import queue
import socket
import threading
from typing import Union

from ttrpc.channel import read_message, write_message
from ttrpc.errors import OthersError, RpcStatusError, SocketError, TtrpcError
from ttrpc.messages import Code, Request, Response, Status
from ttrpc.net import ClientConnection
from ttrpc.proto import (
    MESSAGE_TYPE_RESPONSE,
    GenMessageReturnError,
    MessageHeader,
    check_oversize,
)

log = logging.getLogger(__name__)

_Reply = Union[bytes, TtrpcError]

# How long close() waits for the worker threads to finish, in seconds.
_JOIN_TIMEOUT = 2.0


class Client:
    """A ttrpc client.

    Requests may be issued from several threads at once. A sender thread
    assigns stream ids and writes requests; a receiver thread reads responses
    and hands each one to the request waiting on its stream id.
    """

    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection
        self._pipe = connection.get_pipe_connection()
        self._outgoing: queue.Queue[tuple[bytes, queue.Queue[_Reply]] | None] = queue.Queue()
        self._pending: dict[int, queue.Queue[_Reply]] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._sender = threading.Thread(
            target=self._send_loop, name="ttrpc-client-sender", daemon=True
        )
        self._receiver = threading.Thread(
            target=self._receive_loop, name="ttrpc-client-receiver", daemon=True
        )
        self._sender.start()
        self._receiver.start()

    @classmethod
    def connect(cls, sockaddr: str) -> "Client":
        """Connect to a server at a unix:// or vsock:// address."""
        return cls(ClientConnection.connect(sockaddr))

    @classmethod
    def from_socket(cls, sock: socket.socket) -> "Client":
        """Use a socket that is already connected to a server."""
        return cls(ClientConnection(sock))

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _send_loop(self) -> None:
        stream_id = 1
        while (item := self._outgoing.get()) is not None:
            buf, reply = item
            current = stream_id
            stream_id += 2
            with self._lock:
                self._pending[current] = reply
            header = MessageHeader.new_request(current, len(buf))
            try:
                write_message(self._pipe, header, buf)
            except TtrpcError as exc:
                with self._lock:
                    self._pending.pop(current, None)
                reply.put(exc)
        log.debug("Sender quit")

    def _receive_loop(self) -> None:
        while True:
            try:
                if not self._connection.ready():
                    continue
            except OSError as exc:
                if not self._closed:
                    log.error("pipeConnection ready error %r", exc)
                break

            try:
                header, body = read_message(self._pipe)
            except GenMessageReturnError as exc:
                self._transfer(exc.header, exc.error)
                continue
            except SocketError as exc:
                log.debug("Socket error %s", exc.message)
                self._fail_pending(SocketError(f"socket error {exc.message}"))
                break
            except TtrpcError as exc:
                log.debug("Others error %r", exc)
                continue
            self._transfer(header, body)
        log.debug("Receiver quit")

    def _transfer(self, header: MessageHeader, result: _Reply) -> None:
        """Hand a response to the request waiting on its stream id."""
        with self._lock:
            reply = self._pending.get(header.stream_id)
            if reply is None:
                log.debug("Recver got unknown packet %r %r", header, result)
                return
            if header.message_type != MESSAGE_TYPE_RESPONSE:
                reply.put(OthersError(f"Recver got malformed packet {header!r} {result!r}"))
                return
            reply.put(result)
            del self._pending[header.stream_id]

    def _fail_pending(self, error: TtrpcError) -> None:
        with self._lock:
            waiting = list(self._pending.values())
            self._pending.clear()
        for reply in waiting:
            reply.put(error)

    def request(self, req: Request) -> Response:
        """Send a request and wait for its response.

        A timeout_nano of zero (or less) waits without limit. A response with
        a status other than OK raises RpcStatusError.
        """
        check_oversize(req.size(), False)
        try:
            buf = req.encode()
        except (ValueError, TypeError) as exc:
            raise OthersError(str(exc)) from exc

        reply: queue.Queue[_Reply] = queue.Queue()
        with self._lock:
            if self._closed:
                raise OthersError(
                    "Send packet to sender error sending on a closed channel"
                )
            self._outgoing.put((buf, reply))

        timeout = None if req.timeout_nano <= 0 else req.timeout_nano / 1e9
        try:
            result = reply.get(timeout=timeout)
        except queue.Empty:
            raise OthersError(
                "Receive packet from Receiver timeout: timed out waiting on channel"
            ) from None

        if isinstance(result, TtrpcError):
            raise result

        try:
            res = Response.decode(result)
        except ValueError as exc:
            raise OthersError(f"Unpack response error {exc}") from exc

        status = res.status if res.status is not None else Status()
        if status.code != Code.OK:
            raise RpcStatusError(status)
        return res

    def close(self) -> None:
        """Close the connection and stop the worker threads."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._outgoing.put(None)
        try:
            self._pipe.shutdown()
        except OSError:
            pass
        try:
            self._connection.close()
        except OSError as exc:
            log.debug("closing connection failed: %r", exc)
        self._receiver.join(_JOIN_TIMEOUT)
        self._sender.join(_JOIN_TIMEOUT)
        try:
            self._connection.close_receiver()
        except OSError as exc:
            log.debug("closing receiver failed: %r", exc)
        self._fail_pending(SocketError("socket error connection closed"))
        log.debug("Client is closed")