"""Server-side method handlers and the helpers that send their responses."""

from __future__ import annotations

import abc
import threading
from dataclasses import dataclass, field
from typing import Protocol

from ttrpc.errors import OthersError, TtrpcError, error_to_response
from ttrpc.messages import Request, Response
from ttrpc.proto import MessageHeader, check_oversize


class ResponseSender(Protocol):
    def put(self, item: tuple[MessageHeader, bytes]) -> None: ...


def response_to_channel(stream_id: int, response: Response, tx: ResponseSender) -> None:
    """Encode a response and queue it, with its header, for sending."""
    try:
        buf = response.encode()
    except (ValueError, TypeError) as exc:
        raise OthersError(str(exc)) from exc

    try:
        check_oversize(len(buf), True)
    except TtrpcError as exc:
        buf = error_to_response(exc).encode()

    header = MessageHeader.new_response(stream_id, len(buf))
    try:
        tx.put((header, buf))
    except Exception as exc:  # the sending side may already be shut down
        raise OthersError(str(exc)) from exc


def response_error_to_channel(stream_id: int, error: BaseException, tx: ResponseSender) -> None:
    """Queue a response that carries the status of an error."""
    response_to_channel(stream_id, error_to_response(error), tx)


@dataclass
class TtrpcContext:
    """What a method handler knows about the call it serves.

    The cancel event is set once the connection the request came from is lost.
    """

    fd: int
    cancel: threading.Event
    header: MessageHeader
    res_tx: ResponseSender
    metadata: dict[str, list[str]] = field(default_factory=dict)
    timeout_nano: int = 0


class MethodHandler(abc.ABC):
    """Serves one method; it answers by queueing a response on ctx.res_tx."""

    @abc.abstractmethod
    def handle(self, ctx: TtrpcContext, req: Request) -> None:
        """Handle a request; raising drops the connection."""