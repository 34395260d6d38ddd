"""Socket transport: listening sockets, accepted connections and client sockets."""

from __future__ import annotations

import errno
import logging
import os
import selectors
import socket
import threading

from ttrpc.errors import OthersError

log = logging.getLogger(__name__)

# Longest time ClientConnection.ready waits for data, in seconds.
POLL_MAX_TIME = 0.010

_UNIX_SCHEME = "unix://"
_VSOCK_SCHEME = "vsock://"


def _parse_sockaddr(sockaddr: str) -> tuple[int, object]:
    """Split a ttrpc socket address into an address family and a socket address."""
    if sockaddr.startswith(_UNIX_SCHEME):
        path = sockaddr[len(_UNIX_SCHEME):]
        if not path:
            raise OthersError(f"invalid socket address {sockaddr!r}")
        if path.startswith("@"):
            # Abstract socket: the name lives outside the filesystem.
            path = "\0" + path[1:]
        return socket.AF_UNIX, path

    if sockaddr.startswith(_VSOCK_SCHEME):
        family = getattr(socket, "AF_VSOCK", None)
        if family is None:
            raise OthersError("vsock is not supported on this platform")
        cid, sep, port = sockaddr[len(_VSOCK_SCHEME):].partition(":")
        if not sep:
            raise OthersError(f"invalid vsock address {sockaddr!r}")
        try:
            return family, (int(cid), int(port))
        except ValueError as exc:
            raise OthersError(f"invalid vsock address {sockaddr!r}") from exc

    raise OthersError(f"Scheme {sockaddr!r} is not supported")


class PipeConnection:
    """One established stream connection."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self.id = sock.fileno()

    def read(self, size: int) -> bytes:
        """Receive up to size bytes; an empty result means the peer closed."""
        while True:
            try:
                return self._sock.recv(size)
            except (InterruptedError, BlockingIOError):
                continue

    def write(self, data: bytes | memoryview) -> int:
        """Send some of data and return how many bytes went out."""
        while True:
            try:
                return self._sock.send(data)
            except (InterruptedError, BlockingIOError):
                continue

    def close(self) -> None:
        self._sock.close()

    def shutdown(self) -> None:
        """Stop reading, waking any thread blocked in read."""
        self._sock.shutdown(socket.SHUT_RD)


class PipeListener:
    """A listening socket whose accept can be interrupted by close."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._fd = sock.fileno()
        self._monitor_r, self._monitor_w = os.pipe()
        self._closed = threading.Event()
        self._lock = threading.Lock()

    @classmethod
    def bind(cls, sockaddr: str) -> "PipeListener":
        family, address = _parse_sockaddr(sockaddr)
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.bind(address)
            sock.listen(socket.SOMAXCONN)
        except BaseException:
            sock.close()
            raise
        return cls(sock)

    @classmethod
    def from_socket(cls, sock: socket.socket) -> "PipeListener":
        """Wrap a socket that is already bound and listening."""
        return cls(sock)

    def fileno(self) -> int:
        return self._fd

    def accept(self) -> PipeConnection | None:
        """Wait for a client.

        Returns the new connection, or None on a spurious wake-up or once the
        listener has been closed. Errors from accepting are raised as OSError.
        """
        if self._closed.is_set():
            return None
        with selectors.DefaultSelector() as selector:
            try:
                selector.register(self._monitor_r, selectors.EVENT_READ)
                selector.register(self._sock, selectors.EVENT_READ)
            except ValueError as exc:
                raise OSError(errno.EBADF, "listener is closed") from exc
            events = selector.select()

        ready = {key.fileobj for key, _ in events}
        if self._monitor_r in ready or self._sock not in ready:
            return None

        try:
            conn, _ = self._sock.accept()
        except BlockingIOError:
            return None
        except OSError as exc:
            log.error("failed to accept error %r", exc)
            raise
        return PipeConnection(conn)

    def close(self) -> None:
        """Wake a blocked accept and stop listening."""
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            try:
                os.close(self._monitor_w)
            except OSError as exc:
                log.warning("failed to close notify fd %d with error: %s", self._monitor_w, exc)
            self._sock.close()

    def __del__(self) -> None:
        try:
            os.close(self._monitor_r)
        except (OSError, AttributeError):
            pass


class ClientConnection:
    """The client side of a connection, with a pipe used to stop its reader."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._receiver, self._closer = socket.socketpair()

    @classmethod
    def connect(cls, sockaddr: str) -> "ClientConnection":
        family, address = _parse_sockaddr(sockaddr)
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.connect(address)
        except BaseException:
            sock.close()
            raise
        return cls(sock)

    def ready(self) -> bool:
        """Wait briefly for incoming data.

        Returns True when data can be read and False when the wait timed out.
        Raises OSError once the connection has been closed.
        """
        with selectors.DefaultSelector() as selector:
            try:
                selector.register(self._receiver, selectors.EVENT_READ)
                selector.register(self._sock, selectors.EVENT_READ)
            except ValueError as exc:
                raise OSError(errno.EBADF, "connection is closed") from exc
            events = selector.select(POLL_MAX_TIME)

        ready = {key.fileobj for key, _ in events}
        if self._receiver in ready:
            raise OSError("pipe closed")
        return self._sock in ready

    def get_pipe_connection(self) -> PipeConnection:
        return PipeConnection(self._sock)

    def close_receiver(self) -> None:
        self._receiver.close()

    def close(self) -> None:
        self._closer.close()
        self._sock.close()