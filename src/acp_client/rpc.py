from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Set, Union

from pydantic import BaseModel, ValidationError

from .errors import RequestError, TransportError
from .schema import ErrorObject, Message, Notification, Request, Response
from .transport import Transport, TransportClosed

logger = logging.getLogger(__name__)

JsonValue = Any


class Dispatcher(Protocol):
    """Receives the inbound messages that are not responses to our own calls."""

    async def handle_request(self, request: Request) -> Optional[JsonValue]: ...

    async def handle_notification(self, notification: Notification) -> None: ...


@dataclass(slots=True)
class PendingRequest:
    id: int
    method: str
    future: asyncio.Future[Any]
    created_at: float = field(default_factory=time.monotonic)


def _to_wire(params: Any) -> Any:
    if isinstance(params, BaseModel):
        return params.model_dump(exclude_none=True)
    return params


class RpcRouter:
    """
    JSON-RPC 2.0 request/response correlation on top of a `Transport`.

    - Outgoing request ids start at 1 and are never reused for this transport
    - Responses resolve pending futures by id, in transport order
    - Notifications are handed to the dispatcher inline, in arrival order
    - Server-initiated requests are dispatched in order, each in its own task,
      so a handler can issue calls of its own while it runs
    """

    def __init__(self, transport: Transport, dispatcher: Optional[Dispatcher] = None) -> None:
        self._transport = transport
        self._dispatcher = dispatcher
        self._next_request_id = 1
        self._pending: Dict[int, PendingRequest] = {}
        self._tasks: Set[asyncio.Task[None]] = set()
        self._terminated: Optional[TransportError] = None

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # --- Public API --------------------------------------------------------------

    async def call(self, method: str, params: Optional[JsonValue] = None) -> Any:
        """Send a request and wait for its result.

        Raises:
            RequestError: the peer answered with an error object.
            TransportError: the transport closed before an answer arrived.
        """
        if self._terminated is not None:
            raise TransportError(f"Cannot call {method}: {self._terminated}")
        req_id = self._next_request_id
        self._next_request_id += 1
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = PendingRequest(req_id, method, fut)
        try:
            await self._transport.send(Request(id=req_id, method=method, params=_to_wire(params)))
        except TransportError:
            self._pending.pop(req_id, None)
            raise
        logger.debug("-> %s id=%d", method, req_id)
        return await fut

    async def notify(self, method: str, params: Optional[JsonValue] = None) -> None:
        await self._transport.send(Notification(method=method, params=_to_wire(params)))

    async def respond(self, req_id: Union[int, str], result: Optional[JsonValue]) -> None:
        await self._transport.send(Response(id=req_id, result=_to_wire(result)))

    async def respond_error(self, req_id: Union[int, str, None], error: RequestError) -> None:
        await self._transport.send(Response(id=req_id, error=ErrorObject.model_validate(error.to_error_obj())))

    # --- Inbound -----------------------------------------------------------------

    async def run(self) -> Optional[int]:
        """Pump transport messages until it closes; return the child's exit status."""
        returncode: Optional[int] = None
        try:
            async for message in self._transport.messages():
                if isinstance(message, TransportClosed):
                    returncode = message.returncode
                    break
                await self.on_inbound(message)
        except TransportError as e:
            logger.warning("Receive loop stopped: %s", e)
        finally:
            self.fail_all(TransportError(f"Transport closed (exit status {returncode})"))
        return returncode

    async def on_inbound(self, message: Message) -> None:
        if isinstance(message, Response):
            self._resolve(message)
            return
        if self._dispatcher is None:
            logger.warning("No dispatcher registered; dropping %s", message.method)
            if isinstance(message, Request):
                await self.respond_error(message.id, RequestError.method_not_found(message.method))
            return
        if isinstance(message, Notification):
            try:
                await self._dispatcher.handle_notification(message)
            except Exception:
                logger.exception("Error handling notification %s", message.method)
            return
        task = asyncio.create_task(self._dispatch_request(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _resolve(self, response: Response) -> None:
        if not isinstance(response.id, int) or response.id not in self._pending:
            logger.warning("Dropping response with unknown id %r", response.id)
            return
        pending = self._pending.pop(response.id)
        if pending.future.done():
            return
        if response.error is not None:
            pending.future.set_exception(RequestError.from_error_obj(response.error.model_dump()))
        else:
            pending.future.set_result(response.result)
        logger.debug("<- %s id=%d", pending.method, pending.id)

    async def _dispatch_request(self, request: Request) -> None:
        assert self._dispatcher is not None
        try:
            result = await self._dispatcher.handle_request(request)
        except RequestError as re:
            error: Optional[RequestError] = re
        except ValidationError as ve:
            error = RequestError.invalid_params(ve.errors(include_url=False, include_context=False))
        except Exception as err:  # noqa: BLE001
            logger.exception("Unexpected error in handler for %s", request.method)
            error = RequestError.internal_error({"details": str(err)})
        else:
            error = None
        try:
            if error is not None:
                await self.respond_error(request.id, error)
            else:
                await self.respond(request.id, result)
        except TransportError as e:
            logger.warning("Could not answer %s id=%r: %s", request.method, request.id, e)

    # --- Teardown ----------------------------------------------------------------

    def fail_all(self, exc: TransportError) -> None:
        """Fail every pending call with ``exc``; later calls fail immediately too."""
        self._terminated = exc
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.future.done():
                entry.future.set_exception(exc)
        if pending:
            logger.debug("Failed %d pending request(s): %s", len(pending), exc)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self.fail_all(TransportError("Connection closed"))
        await self._transport.close()
