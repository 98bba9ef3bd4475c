from __future__ import annotations

from typing import Any, Optional, Sequence


# --- JSON-RPC 2.0 error helpers -------------------------------------------------

class RequestError(Exception):
    def __init__(self, code: int, message: str, data: Optional[Any] = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data

    @staticmethod
    def invalid_request(data: Optional[dict] = None) -> "RequestError":
        return RequestError(-32600, "Invalid request", data)

    @staticmethod
    def method_not_found(method: str) -> "RequestError":
        return RequestError(-32601, "Method not found", {"method": method})

    @staticmethod
    def invalid_params(data: Optional[Any] = None) -> "RequestError":
        return RequestError(-32602, "Invalid params", data)

    @staticmethod
    def internal_error(data: Optional[dict] = None) -> "RequestError":
        return RequestError(-32603, "Internal error", data)

    @staticmethod
    def auth_required(data: Optional[dict] = None) -> "RequestError":
        return RequestError(-32000, "Authentication required", data)

    @staticmethod
    def permission_denied(data: Optional[dict] = None) -> "RequestError":
        return RequestError(-32001, "Permission denied", data)

    @staticmethod
    def resource_not_found(uri: str) -> "RequestError":
        return RequestError(-32002, "Resource not found", {"uri": uri})

    @classmethod
    def from_error_obj(cls, error: dict) -> "RequestError":
        code = error.get("code")
        return cls(-32603 if code is None else code, error.get("message") or "Error", error.get("data"))

    def to_error_obj(self) -> dict:
        obj = {"code": self.code, "message": str(self)}
        if self.data is not None:
            obj["data"] = self.data
        return obj


# --- Engine errors ---------------------------------------------------------------

class ACPClientError(Exception):
    """Base class for errors raised by the client engine."""


class TransportError(ACPClientError):
    """The child process or its byte stream failed or closed."""

    def __init__(self, message: str, *, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ProtocolError(ACPClientError):
    """A frame or JSON payload could not be decoded into a message."""


class QuotaError(ACPClientError):
    """The active model reported a quota or rate-limit class failure."""

    def __init__(self, message: str, *, model: Optional[str] = None) -> None:
        super().__init__(message)
        self.model = model


class QuotaExhausted(ACPClientError):
    """Every candidate model failed with a quota-class error."""

    def __init__(self, models: Sequence[str], last_error: Optional[BaseException] = None) -> None:
        tried = ", ".join(models)
        super().__init__(f"all candidate models exhausted ({tried})")
        self.models = list(models)
        self.last_error = last_error


class AuthError(ACPClientError):
    """Authentication failed for a reason other than quota."""


class ToolExecutionError(ACPClientError):
    """A tool call named an unknown capability or its invocation failed."""
