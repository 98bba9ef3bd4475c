__version__ = "0.1.0"

from .meta import (
    PROTOCOL_VERSION,
    AGENT_METHODS,
    CLIENT_METHODS,
)
from .errors import (
    ACPClientError,
    AuthError,
    ProtocolError,
    QuotaError,
    QuotaExhausted,
    RequestError,
    ToolExecutionError,
    TransportError,
)
from .config import ClientConfig, load_config
from .framing import ContentLengthCodec, NewlineCodec, codec_for
from .transport import Transport
from .adapters import AdapterEndpoint, discover_adapter
from .rpc import RpcRouter
from .tools import AllowList, AutoApprove, DenyAll, ToolExecutor, ToolResult, ToolStatus
from .capabilities import LocalCapabilities
from .session import Phase, SessionController, TurnResult
from .fallback import ModelCandidateList, ModelFallbackManager, is_quota_error
from .persistence import SessionStore
from .stdio import stdio_streams

__all__ = [
    "__version__",
    # constants
    "PROTOCOL_VERSION",
    "AGENT_METHODS",
    "CLIENT_METHODS",
    # errors
    "ACPClientError",
    "AuthError",
    "ProtocolError",
    "QuotaError",
    "QuotaExhausted",
    "RequestError",
    "ToolExecutionError",
    "TransportError",
    # wire
    "ContentLengthCodec",
    "NewlineCodec",
    "codec_for",
    "Transport",
    "AdapterEndpoint",
    "discover_adapter",
    "RpcRouter",
    "stdio_streams",
    # engine
    "ClientConfig",
    "load_config",
    "AllowList",
    "AutoApprove",
    "DenyAll",
    "ToolExecutor",
    "ToolResult",
    "ToolStatus",
    "LocalCapabilities",
    "Phase",
    "SessionController",
    "TurnResult",
    "ModelCandidateList",
    "ModelFallbackManager",
    "is_quota_error",
    "SessionStore",
]
