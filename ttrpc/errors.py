"""Errors raised by ttrpc and helpers that turn them into statuses."""

from __future__ import annotations

from ttrpc.messages import Code, Response, Status

SOCKET_DISCONNECTED = "socket disconnected"


class TtrpcError(Exception):
    """Base class for every error raised by ttrpc."""

    def __eq__(self, other: object) -> bool:
        if type(self) is not type(other):
            return NotImplemented
        return self.args == other.args  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash(type(self))


class SocketError(TtrpcError):
    """The underlying connection failed or was closed."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"socket err: {self.message}"


class RpcStatusError(TtrpcError):
    """The call finished with a non-OK status."""

    def __init__(self, status: Status) -> None:
        super().__init__(status)
        self.status = status

    @property
    def code(self) -> Code | int:
        return self.status.code

    def __str__(self) -> str:
        return f"rpc status: {self.status!r}"


class LocalClosedError(TtrpcError):
    """The local end of a stream was closed."""

    def __str__(self) -> str:
        return "ttrpc err: local stream closed"


class RemoteClosedError(TtrpcError):
    """The remote end of a stream was closed."""

    def __str__(self) -> str:
        return "ttrpc err: remote stream closed"


class EofError(TtrpcError):
    """End of stream was reached."""

    def __str__(self) -> str:
        return "eof"


class OthersError(TtrpcError):
    """Any other failure, described by a message."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"ttrpc err: {self.message}"


def get_status(code: Code | int, msg: object) -> Status:
    """Build a status from a code and anything that has a string form."""
    return Status(code=code, message=str(msg))


def get_rpc_status(code: Code | int, msg: object) -> RpcStatusError:
    """Build an error carrying a status with the given code and message."""
    return RpcStatusError(get_status(code, msg))


def sock_error_msg(size: int, msg: str) -> TtrpcError:
    """Error for a short transfer: a disconnect when nothing moved, else a bad argument."""
    if size == 0:
        return SocketError(SOCKET_DISCONNECTED)
    return get_rpc_status(Code.INVALID_ARGUMENT, msg)


def error_to_response(error: BaseException) -> Response:
    """Wrap an error in a response carrying its status."""
    if isinstance(error, RpcStatusError):
        status = error.status
    else:
        status = get_status(Code.UNKNOWN, error)
    return Response(status=status)