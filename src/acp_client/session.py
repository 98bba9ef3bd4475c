"""Session lifecycle against one agent process.

`SessionController` walks a single transport through::

    Connecting -> Handshaking -> [Authenticating] -> CreatingSession
        -> [Authenticating] -> Active <-> AwaitingConsent -> Terminated

and acts as the `rpc.Dispatcher` for everything the agent sends on its own
initiative: streamed ``session/update`` notifications, tool use requests and
permission requests. Errors are classified on the way out: quota-class
failures become `QuotaError` for the fallback manager, authentication
failures become `AuthError`, everything else propagates unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from .config import ClientConfig
from .errors import AuthError, QuotaError, RequestError, ToolExecutionError, TransportError
from .adapters import resolve_endpoint
from .fallback import is_quota_error
from .framing import codec_for
from .meta import AGENT_METHODS, CLIENT_METHODS, TOOL_ALIASES
from .persistence import SessionStore
from .rpc import RpcRouter
from .schema import (
    ApiKeyAuth,
    AuthenticateRequest,
    CancelNotification,
    CreateMessageRequest,
    Implementation,
    InitializeRequest,
    InitializeResponse,
    NewSessionRequest,
    NewSessionResponse,
    Notification,
    PromptRequest,
    PromptResponse,
    Request,
    RequestPermissionRequest,
    SessionAuthRequest,
    SessionNotification,
    SessionUpdate,
    TextContentBlock,
    ToolResultNotification,
)
from .tools import ToolCall, ToolExecutor, ToolResult, ToolStatus
from .transport import Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], Awaitable[Transport]]
UpdateSink = Callable[[SessionUpdate], None]


class Phase(str, Enum):
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    AUTHENTICATING = "authenticating"
    CREATING_SESSION = "creating_session"
    ACTIVE = "active"
    AWAITING_CONSENT = "awaiting_consent"
    TERMINATED = "terminated"


@dataclass
class SessionState:
    model: str
    session_id: Optional[str] = None
    phase: Phase = Phase.CONNECTING


@dataclass
class TurnResult:
    """Everything one prompt turn produced.

    The object stays attached to the controller until the next prompt, so
    updates that trail the turn-ending response still land in it.
    """

    stop_reason: Optional[str] = None
    text: str = ""
    updates: List[SessionUpdate] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)

    def add_update(self, update: SessionUpdate) -> None:
        self.updates.append(update)
        if update.sessionUpdate == "agent_message_chunk":
            self.text += update.text


class SessionController:
    def __init__(
        self,
        config: ClientConfig,
        model: str,
        executor: ToolExecutor,
        *,
        transport_factory: Optional[TransportFactory] = None,
        classify: Callable[[Any], bool] = is_quota_error,
        store: Optional[SessionStore] = None,
        on_update: Optional[UpdateSink] = None,
    ) -> None:
        self._config = config
        self._executor = executor
        self._transport_factory = transport_factory or self._open_transport
        self._classify = classify
        self._store = store
        self._on_update = on_update
        self.state = SessionState(model=model)
        self.init_response: Optional[InitializeResponse] = None
        self.exit_code: Optional[int] = None
        self._router: Optional[RpcRouter] = None
        self._reader: Optional[asyncio.Task[None]] = None
        self._turn: Optional[TurnResult] = None
        self._consent_waiters = 0

    @property
    def model(self) -> str:
        return self.state.model

    @property
    def session_id(self) -> Optional[str]:
        return self.state.session_id

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def router(self) -> Optional[RpcRouter]:
        return self._router

    async def _open_transport(self, model: str) -> Transport:
        cfg = self._config
        if cfg.connect:
            endpoint = resolve_endpoint(cfg.connect, cfg.adapter_file)
            return await Transport.connect(endpoint.host, endpoint.port, codec=codec_for(cfg.framing))
        return await Transport.spawn(
            cfg.agent_command,
            cfg.agent_args_for(model),
            codec=codec_for(cfg.framing),
            env=cfg.agent_env(model),
            cwd=cfg.cwd,
        )

    # --- Lifecycle ---------------------------------------------------------------

    async def start(self) -> SessionState:
        """Connect, handshake, authenticate if needed and create a session.

        Raises:
            QuotaError: the agent reported a quota-class failure.
            AuthError: authentication was required and failed.
            TransportError: the agent could not be spawned or went away.
            RequestError: any other error answer during the handshake.
        """
        self._enter(Phase.CONNECTING)
        try:
            transport = await self._transport_factory(self.model)
        except TransportError:
            self._enter(Phase.TERMINATED)
            raise
        self._router = RpcRouter(transport, self)
        self._reader = asyncio.create_task(self._pump(self._router))

        try:
            await self._handshake()
        except BaseException:
            await self.shutdown()
            raise
        return self.state

    async def _handshake(self) -> None:
        cfg = self._config
        self._enter(Phase.HANDSHAKING)
        raw = await self._call(
            AGENT_METHODS["initialize"],
            InitializeRequest(
                protocolVersion=cfg.protocol_version,
                clientInfo=Implementation(name=cfg.client_name, version=cfg.client_version),
            ),
        )
        self.init_response = InitializeResponse.model_validate(raw or {})

        session_auth = cfg.auth.method == AGENT_METHODS["session_auth"]
        if self._auth_required() and not session_auth:
            self._enter(Phase.AUTHENTICATING)
            await self._authenticate()

        self._enter(Phase.CREATING_SESSION)
        raw = await self._call(
            AGENT_METHODS["session_new"],
            NewSessionRequest(cwd=cfg.cwd, mcpServers=cfg.mcp_servers),
        )
        self.state.session_id = NewSessionResponse.model_validate(raw).sessionId
        if self._store is not None:
            self._store.save(self.state.session_id)

        if self._auth_required() and session_auth:
            self._enter(Phase.AUTHENTICATING)
            await self._authenticate()

        self._enter(Phase.ACTIVE)
        logger.info("Session %s active on model %s", self.session_id, self.model)

    def _auth_required(self) -> bool:
        auth = self._config.auth
        if auth.required:
            return True
        advertised = self.init_response is not None and bool(self.init_response.authMethods)
        return advertised and bool(auth.api_key)

    async def _authenticate(self) -> None:
        auth = self._config.auth
        if not auth.api_key and auth.method == AGENT_METHODS["session_auth"]:
            raise AuthError(f"Authentication required but {auth.credential_env} is not set")
        if auth.method == AGENT_METHODS["session_auth"]:
            assert self.session_id is not None
            params: BaseModel = SessionAuthRequest(sessionId=self.session_id, auth=ApiKeyAuth(apiKey=auth.api_key))
        else:
            method_id = auth.method_id
            if method_id is None and self.init_response is not None and self.init_response.authMethods:
                method_id = self.init_response.authMethods[0].id
            if method_id is None:
                raise AuthError("Authentication required but the agent advertises no auth method")
            params = AuthenticateRequest(methodId=method_id, apiKey=auth.api_key)
        try:
            await self._call(auth.method, params)
        except RequestError as e:
            raise AuthError(f"Authentication with {auth.method} failed: {e}") from e

    async def prompt(self, prompt: Union[str, List[TextContentBlock]]) -> TurnResult:
        """Run one prompt turn and return what it produced.

        Raises:
            QuotaError: the model is out of capacity.
            RequestError: the agent answered the prompt with another error;
                the session stays active.
            TransportError: the agent went away, during the turn or before it.
            RuntimeError: the session was never started.
        """
        if self.phase is Phase.TERMINATED:
            raise TransportError(
                f"Agent for model {self.model} exited with status {self.exit_code}", exit_code=self.exit_code
            )
        if self.phase is not Phase.ACTIVE or self.session_id is None:
            raise RuntimeError(f"Cannot prompt while session is {self.phase.value}")
        blocks = [TextContentBlock(text=prompt)] if isinstance(prompt, str) else prompt
        turn = TurnResult()
        self._turn = turn
        raw = await self._call(AGENT_METHODS["session_prompt"], PromptRequest(sessionId=self.session_id, prompt=blocks))
        response = PromptResponse.model_validate(raw or {})
        turn.stop_reason = response.stopReason
        if response.content and not turn.text:
            turn.text = response.text()
        logger.debug("Turn ended: stopReason=%s", turn.stop_reason)
        return turn

    async def cancel(self) -> None:
        if self._router is None or self.session_id is None:
            return
        await self._router.notify(AGENT_METHODS["session_cancel"], CancelNotification(sessionId=self.session_id))

    async def shutdown(self) -> None:
        """Fail pending calls, stop the agent and enter Terminated. Idempotent."""
        self._enter(Phase.TERMINATED)
        router, self._router = self._router, None
        if router is not None:
            router.fail_all(TransportError("Session shut down"))
            await router.close()
            if self.exit_code is None:
                self.exit_code = router.transport.returncode
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def _pump(self, router: RpcRouter) -> None:
        code = await router.run()
        self.exit_code = code
        if self.phase is not Phase.TERMINATED:
            logger.info("Agent for model %s exited with status %s", self.model, code)
            self._enter(Phase.TERMINATED)

    def _enter(self, phase: Phase) -> None:
        if self.state.phase is not phase:
            logger.debug("Session phase %s -> %s", self.state.phase.value, phase.value)
            self.state.phase = phase

    async def _call(self, method: str, params: Any) -> Any:
        if self._router is None:
            raise TransportError(f"Cannot call {method}: no transport")
        try:
            return await self._router.call(method, params)
        except RequestError as e:
            if self._classify(e):
                raise QuotaError(f"{method} failed on {self.model}: {e}", model=self.model) from e
            raise
        except TransportError:
            self._enter(Phase.TERMINATED)
            raise

    # --- Dispatcher --------------------------------------------------------------

    async def handle_notification(self, notification: Notification) -> None:
        method = notification.method
        if method == CLIENT_METHODS["session_update"]:
            self._on_session_update(SessionNotification.model_validate(notification.params or {}))
        elif method == CLIENT_METHODS["sampling_create_message"]:
            request = CreateMessageRequest.model_validate(notification.params or {})
            for block in request.tool_uses():
                result = await self._run_tool(ToolCall(id=block.id, name=block.name, input=block.input))
                await self._notify_tool_result(result)
        else:
            logger.debug("Ignoring notification %s", method)

    async def handle_request(self, request: Request) -> Any:
        method = request.method
        params = request.params or {}
        if method == CLIENT_METHODS["sampling_create_message"]:
            return await self._answer_tool_use(CreateMessageRequest.model_validate(params))
        if method in TOOL_ALIASES:
            return await self._answer_capability(ToolCall(id=request.id, name=method, input=params))
        if method == CLIENT_METHODS["session_request_permission"]:
            return await self._answer_permission(RequestPermissionRequest.model_validate(params))
        raise RequestError.method_not_found(method)

    def _on_session_update(self, notification: SessionNotification) -> None:
        if self.session_id is not None and notification.sessionId != self.session_id:
            logger.debug("Dropping update for foreign session %s", notification.sessionId)
            return
        if self._turn is not None:
            self._turn.add_update(notification.update)
        if self._on_update is not None:
            self._on_update(notification.update)

    async def _run_tool(self, call: ToolCall) -> ToolResult:
        if self.phase not in (Phase.ACTIVE, Phase.AWAITING_CONSENT):
            raise RequestError.invalid_request({"reason": f"session is {self.phase.value}"})
        self._consent_waiters += 1
        self._enter(Phase.AWAITING_CONSENT)
        try:
            result = await self._executor.execute(call)
        except ToolExecutionError as e:
            result = ToolResult(tool_call_id=call.id, name=call.name, status=ToolStatus.FAILED, error=str(e))
        finally:
            self._consent_waiters -= 1
            if self._consent_waiters == 0 and self.phase is Phase.AWAITING_CONSENT:
                self._enter(Phase.ACTIVE)
        if self._turn is not None:
            self._turn.tool_results.append(result)
        return result

    async def _answer_tool_use(self, request: CreateMessageRequest) -> Dict[str, Any]:
        blocks = request.tool_uses()
        if not blocks:
            raise RequestError.invalid_request({"reason": "sampling/createMessage without tool_use content"})
        content = []
        for block in blocks:
            result = await self._run_tool(ToolCall(id=block.id, name=block.name, input=block.input))
            content.append(
                {
                    "type": "tool_result",
                    "tool_use_id": block.id,
                    "content": result.error if result.is_error else result.content,
                    "is_error": result.is_error,
                    "status": result.status.value,
                }
            )
        return {"role": "user", "content": content}

    async def _answer_capability(self, call: ToolCall) -> Any:
        result = await self._run_tool(call)
        if result.status is ToolStatus.REJECTED:
            raise RequestError.permission_denied({"toolCallId": call.id, "status": result.status.value})
        if result.not_found:
            raise RequestError.resource_not_found(str(call.input.get("path", "")))
        if result.is_error:
            raise RequestError.internal_error({"details": result.error})
        return result.data

    async def _notify_tool_result(self, result: ToolResult) -> None:
        if self._router is None:
            return
        await self._router.notify(
            AGENT_METHODS["tool_result"],
            ToolResultNotification(
                toolCallId=str(result.tool_call_id),
                status=result.status.value,
                content=(result.error or "") if result.is_error else result.content,
                isError=result.is_error,
            ),
        )

    async def _answer_permission(self, request: RequestPermissionRequest) -> Dict[str, Any]:
        tool_call = request.toolCall
        title = str(tool_call.get("title") or tool_call.get("kind") or tool_call.get("toolCallId") or "tool")
        raw_input = tool_call.get("rawInput") or {}
        self._consent_waiters += 1
        self._enter(Phase.AWAITING_CONSENT)
        try:
            approved = await self._executor.ask_consent(title, raw_input)
        finally:
            self._consent_waiters -= 1
            if self._consent_waiters == 0 and self.phase is Phase.AWAITING_CONSENT:
                self._enter(Phase.ACTIVE)
        wanted = "allow" if approved else "reject"
        for option in request.options:
            if (option.kind or "").startswith(wanted):
                return {"outcome": {"outcome": "selected", "optionId": option.optionId}}
        if approved and request.options:
            return {"outcome": {"outcome": "selected", "optionId": request.options[0].optionId}}
        return {"outcome": {"outcome": "cancelled"}}
