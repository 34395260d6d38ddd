"""Synchronous ttrpc server: accepts connections and dispatches requests to handlers."""

from __future__ import annotations

import errno
import logging
import queue
import socket
import threading
from typing import Iterable, Mapping, Optional, Union

from ttrpc.channel import read_message, write_message
from ttrpc.errors import OthersError, SocketError, TtrpcError, get_status
from ttrpc.handler import (
    MethodHandler,
    TtrpcContext,
    response_error_to_channel,
    response_to_channel,
)
from ttrpc.messages import Code, KeyValue, Request, Response
from ttrpc.net import PipeConnection, PipeListener
from ttrpc.proto import MESSAGE_TYPE_REQUEST, GenMessageReturnError, MessageHeader

log = logging.getLogger(__name__)

# Each connection starts DEFAULT worker threads. When fewer than MIN are
# waiting for work, more are started up to DEFAULT again; when more than MAX
# would be waiting, the surplus ones exit.
DEFAULT_WAIT_THREAD_COUNT_DEFAULT = 3
DEFAULT_WAIT_THREAD_COUNT_MIN = 1
DEFAULT_WAIT_THREAD_COUNT_MAX = 5
DEFAULT_ACCEPT_RETRY_INTERVAL = 10.0

_RESOURCE_LIMIT_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM})

_Workload = Optional[tuple[MessageHeader, Union[bytes, TtrpcError]]]
_Outgoing = Optional[tuple[MessageHeader, bytes]]


def is_resource_limit_error(error: BaseException) -> bool:
    """Whether an accept error comes from exhausted system resources."""
    return isinstance(error, OSError) and error.errno in _RESOURCE_LIMIT_ERRNOS


def _metadata_from_pb(entries: Iterable[KeyValue]) -> dict[str, list[str]]:
    metadata: dict[str, list[str]] = {}
    for entry in entries:
        metadata.setdefault(entry.key, []).append(entry.value)
    return metadata


class _Counter:
    """A thread-safe integer counter."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def add(self, delta: int) -> int:
        with self._lock:
            self._value += delta
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class _ConnectionHandler:
    """Serves every request arriving on one accepted connection."""

    def __init__(
        self,
        pipe: PipeConnection,
        methods: Mapping[str, MethodHandler],
        reaper: queue.Queue[Optional[int]],
        default: int,
        minimum: int,
        maximum: int,
    ) -> None:
        self.pipe = pipe
        self.quit = threading.Event()
        self._methods = methods
        self._reaper = reaper
        self._default = default
        self._min = minimum
        self._max = maximum
        self._cancel = threading.Event()
        self._workload: queue.Queue[_Workload] = queue.Queue()
        self._responses: queue.Queue[_Outgoing] = queue.Queue()
        self._control: queue.Queue[None] = queue.Queue()
        self._waiting = _Counter()
        self._thread = threading.Thread(target=self._run, name="client_handler", daemon=True)

    @property
    def id(self) -> int:
        return self.pipe.id

    def start(self) -> None:
        self._thread.start()

    def join(self) -> None:
        self._thread.join()

    def shutdown(self) -> None:
        self.quit.set()
        try:
            self.pipe.shutdown()
        except OSError:
            pass
        self._control.put(None)

    def close(self) -> None:
        try:
            self.pipe.close()
        except OSError:
            pass

    def _run(self) -> None:
        log.debug("Got new client")
        writer = threading.Thread(target=self._write_loop, daemon=True)
        reader = threading.Thread(target=self._read_loop, daemon=True)
        writer.start()
        reader.start()

        self._start_workers(self._default)
        while not self.quit.is_set():
            self._check_workers()
            self._control.get()

        # Wake every worker still waiting for work, then the writer and reader.
        for _ in range(self._max):
            self._workload.put(None)
        self._responses.put(None)
        try:
            self.pipe.shutdown()
        except OSError:
            pass
        writer.join()
        reader.join()
        self._cancel.set()
        # The reaper closes the connection, so its descriptor is not reused early.
        self._reaper.put(self.id)
        log.debug("client thread quit")

    def _write_loop(self) -> None:
        while (item := self._responses.get()) is not None:
            header, payload = item
            log.debug("response thread get %r", header)
            try:
                write_message(self.pipe, header, payload)
            except TtrpcError as exc:
                log.error("write_message got %r", exc)
                self._quit_connection()
                break
        log.debug("response thread quit")

    def _read_loop(self) -> None:
        while not self.quit.is_set():
            try:
                header, body = read_message(self.pipe)
            except GenMessageReturnError as exc:
                self._workload.put((exc.header, exc.error))
                continue
            except SocketError as exc:
                log.debug("Socket error %s", exc.message)
                self._cancel.set()
                self._quit_connection()
                break
            except TtrpcError as exc:
                log.debug("Other error %r", exc)
                continue
            self._workload.put((header, body))
        log.debug("read message thread quit")

    def _quit_connection(self) -> None:
        self.quit.set()
        self._control.put(None)

    def _start_workers(self, count: int) -> None:
        for _ in range(count):
            if self.quit.is_set():
                break
            threading.Thread(target=self._worker, daemon=True).start()

    def _check_workers(self) -> None:
        waiting = self._waiting.value
        if waiting < self._min:
            self._start_workers(self._default - waiting)

    def _worker(self) -> None:
        while not self.quit.is_set():
            if self._waiting.add(1) > self._max:
                self._waiting.add(-1)
                break

            item = self._workload.get()

            if self.quit.is_set():
                self._control.put(None)
                break

            if self._waiting.add(-1) < self._min:
                log.debug("notify client handler to create more worker threads")
                self._control.put(None)

            if item is None:
                self._quit_connection()
                break

            header, body = item
            try:
                self._serve(header, body)
            except Exception as exc:
                log.debug("serving stream %d failed: %r", header.stream_id, exc)
                self._quit_connection()
                break

    def _serve(self, header: MessageHeader, body: Union[bytes, TtrpcError]) -> None:
        if isinstance(body, TtrpcError):
            response_error_to_channel(header.stream_id, body, self._responses)
            return

        if header.message_type != MESSAGE_TYPE_REQUEST:
            return

        try:
            req = Request.decode(body)
        except ValueError as exc:
            status = get_status(Code.INVALID_ARGUMENT, exc)
            response_to_channel(header.stream_id, Response(status=status), self._responses)
            return
        log.debug("Got Message request %r", req)

        path = f"/{req.service}/{req.method}"
        method = self._methods.get(path)
        if method is None:
            status = get_status(Code.INVALID_ARGUMENT, f"{path} does not exist")
            response_to_channel(header.stream_id, Response(status=status), self._responses)
            return

        ctx = TtrpcContext(
            fd=self.id,
            cancel=self._cancel,
            header=header,
            res_tx=self._responses,
            metadata=_metadata_from_pb(req.metadata),
            timeout_nano=req.timeout_nano,
        )
        method.handle(ctx, req)


class Server:
    """A ttrpc server listening on one address.

    Methods are registered under paths of the form "/<service>/<method>".
    """

    def __init__(
        self,
        thread_count_default: int = DEFAULT_WAIT_THREAD_COUNT_DEFAULT,
        thread_count_min: int = DEFAULT_WAIT_THREAD_COUNT_MIN,
        thread_count_max: int = DEFAULT_WAIT_THREAD_COUNT_MAX,
        accept_retry_interval: float = DEFAULT_ACCEPT_RETRY_INTERVAL,
    ) -> None:
        self.thread_count_default = thread_count_default
        self.thread_count_min = thread_count_min
        self.thread_count_max = thread_count_max
        self.accept_retry_interval = accept_retry_interval
        self._listeners: list[PipeListener] = []
        self._listener_quit = threading.Event()
        self._connections: dict[int, _ConnectionHandler] = {}
        self._connections_lock = threading.Lock()
        self._methods: dict[str, MethodHandler] = {}
        self._handler: Optional[threading.Thread] = None
        self._reaper: Optional[tuple[queue.Queue[Optional[int]], threading.Thread]] = None

    def _ensure_unbound(self) -> None:
        if self._listeners:
            raise OthersError("ttrpc just support 1 sockaddr now")

    def bind(self, sockaddr: str) -> "Server":
        """Listen on a unix:// or vsock:// address."""
        self._ensure_unbound()
        self._listeners.append(PipeListener.bind(sockaddr))
        return self

    def add_listener(self, sock: socket.socket) -> "Server":
        """Listen on a socket that is already bound and listening."""
        self._ensure_unbound()
        self._listeners.append(PipeListener.from_socket(sock))
        return self

    def register_service(self, methods: Mapping[str, MethodHandler]) -> "Server":
        self._methods.update(methods)
        return self

    def fileno(self) -> int:
        if not self._listeners:
            raise OthersError("ttrpc not bind")
        return self._listeners[0].fileno()

    def start(self) -> None:
        """Check the worker thread counts and start listening."""
        if self.thread_count_default >= self.thread_count_max:
            raise OthersError("thread_count_default should smaller than thread_count_max")
        if self.thread_count_default <= self.thread_count_min:
            raise OthersError("thread_count_default should bigger than thread_count_min")
        self.start_listen()
        log.info("server started")

    def start_listen(self) -> None:
        """Start accepting connections in a background thread."""
        if not self._listeners:
            raise OthersError("ttrpc not bind")

        self._listener_quit.clear()
        listener = self._listeners[0]

        if self._reaper is None:
            reaper_queue: queue.Queue[Optional[int]] = queue.Queue()
            reaper = threading.Thread(
                target=self._reap, args=(reaper_queue,), name="reaper", daemon=True
            )
            reaper.start()
            self._reaper = (reaper_queue, reaper)

        self._handler = threading.Thread(
            target=self._listen_loop,
            args=(listener, dict(self._methods), self._reaper[0]),
            name="listener_loop",
            daemon=True,
        )
        self._handler.start()
        log.info("server listen started")

    def _listen_loop(
        self,
        listener: PipeListener,
        methods: Mapping[str, MethodHandler],
        reaper_queue: queue.Queue[Optional[int]],
    ) -> None:
        while not self._listener_quit.is_set():
            try:
                pipe = listener.accept()
            except InterruptedError as exc:
                log.error("got interruption %r. Continue...", exc)
                continue
            except OSError as exc:
                log.error("listener accept got %r", exc)
                # Resource limits do not clear up at once and polling is
                # level-triggered, so wait before trying again.
                if is_resource_limit_error(exc):
                    self._listener_quit.wait(self.accept_retry_interval)
                continue
            if pipe is None:
                continue

            conn = _ConnectionHandler(
                pipe,
                methods,
                reaper_queue,
                self.thread_count_default,
                self.thread_count_min,
                self.thread_count_max,
            )
            with self._connections_lock:
                self._connections[conn.id] = conn
                conn.start()
        log.info("ttrpc server listener stopped")

    def _reap(self, reaper_queue: queue.Queue[Optional[int]]) -> None:
        while (conn_id := reaper_queue.get()) is not None:
            with self._connections_lock:
                conn = self._connections.pop(conn_id, None)
            if conn is not None:
                conn.join()
                conn.close()
        log.info("reaper thread exited")

    def stop_listen(self) -> "Server":
        """Stop accepting connections; established ones keep running."""
        if not self._listeners:
            raise OthersError("ttrpc not bind")
        self._listener_quit.set()
        try:
            self._listeners[0].close()
        except OSError as exc:
            log.warning("failed to close connection with error: %s", exc)
        log.info("close monitor")
        if self._handler is not None:
            self._handler.join()
            self._handler = None
        log.info("listener thread stopped")
        return self

    def disconnect(self) -> None:
        """Shut down every connection and wait until all have been closed."""
        log.info("begin to shutdown connection")
        with self._connections_lock:
            connections = list(self._connections.values())
        for conn in connections:
            conn.shutdown()
        for conn in connections:
            conn.join()
        log.info("connections closed")

        if self._reaper is not None:
            reaper_queue, reaper = self._reaper
            self._reaper = None
            reaper_queue.put(None)
            reaper.join()
        log.info("reaper thread stopped")

    def shutdown(self) -> None:
        self.stop_listen().disconnect()