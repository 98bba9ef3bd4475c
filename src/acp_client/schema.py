"""Wire messages and the ACP payloads the client engine exchanges.

`Request`, `Response` and `Notification` form the closed message variant.
Raw decoded JSON is turned into one of them by `parse_message`, so nothing
past the decode boundary looks at untyped payload dicts. The remaining models
describe the ``params``/``result`` shapes of the methods in `meta`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ProtocolError


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


# --- JSON-RPC messages -----------------------------------------------------------

class ErrorObject(_Payload):
    code: Optional[int] = None
    message: str = ""
    data: Any = None


class Request(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[int, str]
    method: str
    params: Any = None


class Response(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[int, str, None]
    result: Any = None
    error: Optional[ErrorObject] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


class Notification(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Any = None


Message = Union[Request, Response, Notification]


def parse_message(obj: Any) -> Message:
    """Validate one decoded JSON value as a JSON-RPC message.

    Raises:
        ProtocolError: if the value is not an object or matches no variant.
    """
    if not isinstance(obj, dict):
        raise ProtocolError(f"JSON-RPC message must be an object, got {type(obj).__name__}")
    try:
        if "method" in obj:
            if obj.get("id") is not None:
                return Request.model_validate(obj)
            return Notification.model_validate(obj)
        if "id" in obj and ("result" in obj or "error" in obj):
            return Response.model_validate(obj)
    except ValidationError as e:
        raise ProtocolError(f"Invalid JSON-RPC message: {e}") from e
    raise ProtocolError("Message is neither a request, a response nor a notification")


def dump_message(message: Message) -> Dict[str, Any]:
    if isinstance(message, Response):
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": message.id}
        if message.error is not None:
            payload["error"] = message.error.model_dump(exclude_none=True)
        else:
            payload["result"] = message.result
        return payload
    if isinstance(message, Request):
        payload = {"jsonrpc": "2.0", "id": message.id, "method": message.method}
    else:
        payload = {"jsonrpc": "2.0", "method": message.method}
    if message.params is not None:
        payload["params"] = message.params
    return payload


# --- Handshake & authentication ---------------------------------------------------

class Implementation(_Payload):
    name: str
    version: str


class FileSystemCapability(_Payload):
    readTextFile: bool = True
    writeTextFile: bool = True


class ClientCapabilities(_Payload):
    fs: FileSystemCapability = Field(default_factory=FileSystemCapability)
    terminal: bool = True


class InitializeRequest(_Payload):
    protocolVersion: int
    clientInfo: Optional[Implementation] = None
    clientCapabilities: ClientCapabilities = Field(default_factory=ClientCapabilities)


class AuthMethod(_Payload):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None


class InitializeResponse(_Payload):
    protocolVersion: Union[int, str, None] = None
    agentCapabilities: Optional[Dict[str, Any]] = None
    authMethods: List[AuthMethod] = Field(default_factory=list)


class AuthenticateRequest(_Payload):
    methodId: str
    apiKey: Optional[str] = None


class ApiKeyAuth(_Payload):
    type: Literal["apiKey"] = "apiKey"
    apiKey: str


class SessionAuthRequest(_Payload):
    sessionId: str
    auth: ApiKeyAuth


# --- Sessions & prompting ----------------------------------------------------------

class NewSessionRequest(_Payload):
    cwd: str
    mcpServers: List[Dict[str, Any]] = Field(default_factory=list)


class NewSessionResponse(_Payload):
    sessionId: str


class TextContentBlock(_Payload):
    type: Literal["text"] = "text"
    text: str


class PromptRequest(_Payload):
    sessionId: str
    prompt: List[TextContentBlock]


class PromptResponse(_Payload):
    stopReason: Optional[str] = None
    content: List[Dict[str, Any]] = Field(default_factory=list)

    def text(self) -> str:
        return "".join(
            block.get("text", "") for block in self.content if isinstance(block, dict) and block.get("type") == "text"
        )


class CancelNotification(_Payload):
    sessionId: str


class SessionUpdate(_Payload):
    sessionUpdate: str
    content: Any = None

    @property
    def text(self) -> str:
        if isinstance(self.content, dict) and self.content.get("type") == "text":
            return self.content.get("text", "")
        return ""


class SessionNotification(_Payload):
    sessionId: str
    update: SessionUpdate


# --- Tool use ----------------------------------------------------------------------

class ToolUseBlock(_Payload):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class CreateMessageRequest(_Payload):
    messages: List[Any] = Field(default_factory=list)
    content: Union[List[Dict[str, Any]], Dict[str, Any]] = Field(default_factory=list)

    def tool_uses(self) -> List[ToolUseBlock]:
        blocks = self.content if isinstance(self.content, list) else [self.content]
        return [ToolUseBlock.model_validate(b) for b in blocks if isinstance(b, dict) and b.get("type") == "tool_use"]


class ToolResultNotification(_Payload):
    toolCallId: str
    status: str
    content: str = ""
    isError: bool = False


class ExecuteCommandInput(_Payload):
    command: str
    cwd: Optional[str] = None


class ReadTextFileInput(_Payload):
    path: str
    line: Optional[int] = None
    limit: Optional[int] = None


class WriteTextFileInput(_Payload):
    path: str
    content: str


class PermissionOption(_Payload):
    optionId: str
    name: Optional[str] = None
    kind: Optional[str] = None


class RequestPermissionRequest(_Payload):
    sessionId: str
    toolCall: Dict[str, Any] = Field(default_factory=dict)
    options: List[PermissionOption] = Field(default_factory=list)
