# ttrpc

A small RPC protocol for low-memory environments. It is spoken over Unix
domain sockets or vsock. Every message is a 10-byte header followed by a
protobuf payload. The package has no runtime dependencies. It has its own
wire encoding for the `Request`, `Response`, `Status` and `KeyValue` messages
(`ttrpc.messages`).

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `ttrpc.messages` holds the `Code` enum and the `KeyValue`, `Status`,
  `Request` and `Response` dataclasses. Each dataclass has `encode()` and
  `decode(data)`. `Request` and `Response` also have `size()`. Bad input
  raises `DecodeError`, which is a `ValueError`.
- `ttrpc.errors` holds the error classes. They are `TtrpcError`,
  `SocketError`, `RpcStatusError`, `LocalClosedError`, `RemoteClosedError`,
  `EofError` and `OthersError`. The module also has the helpers `get_status`,
  `get_rpc_status`, `sock_error_msg` and `error_to_response`.
- `ttrpc.proto` holds `MessageHeader`, `GenMessage`, `Message`,
  `GenMessageReturnError`, `check_oversize` and the protocol constants.
- `ttrpc.net` is the socket transport. It holds `PipeListener`,
  `PipeConnection` and `ClientConnection`.
- `ttrpc.channel` reads and writes whole framed messages over a connection.
  Its functions are `read_message` and `write_message`.
- `ttrpc.handler` holds `MethodHandler`, `TtrpcContext`,
  `response_to_channel` and `response_error_to_channel`.
- `ttrpc.client` holds the threaded `Client`.
- `ttrpc.server` holds the threaded `Server` and `is_resource_limit_error`.

## Socket addresses

- `unix:///run/some.sock` is a normal Unix domain socket.
- `unix://@/run/some.sock` is an abstract Unix domain socket (Linux only).
- `vsock://<cid>:<port>` is a vsock socket. It works only where the platform
  provides `socket.AF_VSOCK`.

Any other scheme raises `OthersError`.

## Serving methods

A service method is a subclass of `ttrpc.handler.MethodHandler`. Its
`handle(ctx, req)` method gets a `TtrpcContext` and the decoded `Request`. It
answers by queueing a response with `response_to_channel`. If `handle`
raises, the connection is dropped.

```python
from ttrpc.handler import MethodHandler, response_to_channel
from ttrpc.messages import Code, Response, Status
from ttrpc.server import Server


class Echo(MethodHandler):
    def handle(self, ctx, req):
        res = Response(status=Status(code=Code.OK), payload=req.payload)
        response_to_channel(ctx.header.stream_id, res, ctx.res_tx)


server = Server()
server.bind("unix:///tmp/echo.sock")
server.register_service({"/demo.Echo/Echo": Echo()})
server.start()
# ... later
server.shutdown()
```

Methods are looked up by the path `/<service>/<method>`. An unknown path gets
a response with status `INVALID_ARGUMENT`.

The context gives the handler several fields:

- `fd` is the connection id.
- `header` is the request's `MessageHeader`.
- `metadata` maps each key to a list of values.
- `timeout_nano` is the request's timeout.
- `cancel` is a `threading.Event`. It is set once the connection is lost.

`Server(thread_count_default=3, thread_count_min=1, thread_count_max=5,
accept_retry_interval=10.0)` sets how many worker threads each connection
keeps. `Server.start` checks that
`thread_count_min < thread_count_default < thread_count_max` and raises
`OthersError` otherwise.

A server listens on one address only. You can give it that address with
`bind(sockaddr)`, or hand it a socket that is already listening with
`add_listener(sock)`. A second call of either raises `OthersError`.

The server can be stopped in three ways:

- `stop_listen()` stops accepting new connections.
- `disconnect()` shuts down the connections that are open.
- `shutdown()` does both.

## Calling methods

```python
from ttrpc.client import Client
from ttrpc.messages import Request

with Client.connect("unix:///tmp/echo.sock") as client:
    res = client.request(
        Request(service="demo.Echo", method="Echo", payload=b"hi", timeout_nano=10**9)
    )
    print(res.payload)
```

`Client.from_socket(sock)` wraps a socket that is already connected. Requests
may be sent from several threads at once.

A `timeout_nano` of zero or less waits without limit. Errors are raised as
follows:

- A response with a status other than `Code.OK` raises `RpcStatusError`,
  whose `status` holds the returned `Status`.
- Socket failures raise `SocketError`.
- Local problems raise `OthersError`. These are a timeout, an oversized
  request, or a request made after `close()`.

## Framing

`MessageHeader.from_bytes` and `to_bytes` convert the 10-byte big-endian
header. `MessageHeader`, `GenMessage` and `Message` also have async
`write_to(writer)` and `read_from(reader)`. These work over asyncio streams,
or over any object with `readexactly`, `write` and `drain`.

Messages larger than 4 MiB are refused, and `check_oversize` raises for them.
When a reader meets an oversized message, it discards the body. After that,
what happens depends on the reader:

- `GenMessage.read_from` and `ttrpc.channel.read_message` raise
  `GenMessageReturnError`. It holds the header and the error to answer with.
- `Message.read_from` returns an empty payload.

## What it does not do

- There is no command-line program. The package is a library only.
- The client and server are thread-based. There is no asyncio client or
  server. Only the framing helpers in `ttrpc.proto` are async.
- Streaming calls are not supported. The `MESSAGE_TYPE_DATA` and flag
  constants exist, but nothing sends or handles data messages.
- Service stubs are not generated from `.proto` files. Handlers decode their
  own request payloads, and clients encode their own.
- Only POSIX sockets are supported. There is no Windows named-pipe transport.