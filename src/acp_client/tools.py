"""Consent-gated execution of agent tool calls.

The agent asks the client to act on its behalf (run a shell command, read or
write a file). `ToolExecutor` resolves the tool name, asks a `ConsentSource`
and only then drives a `CapabilityBackend`. Every call ends in a `ToolResult`
that can be sent back to the agent, rejections included, so a turn can
always conclude.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Collection, Dict, Optional, Protocol, Union

from pydantic import BaseModel, Field, ValidationError

from .errors import ToolExecutionError
from .meta import CLIENT_METHODS, TOOL_ALIASES
from .schema import ExecuteCommandInput, ReadTextFileInput, WriteTextFileInput

logger = logging.getLogger(__name__)

TERMINAL_EXECUTE = CLIENT_METHODS["terminal_execute"]
FS_READ_TEXT_FILE = CLIENT_METHODS["fs_read_text_file"]
FS_WRITE_TEXT_FILE = CLIENT_METHODS["fs_write_text_file"]


class ToolStatus(str, Enum):
    REQUESTED = "requested"
    CONSENTED = "consented"
    REJECTED = "rejected"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ToolCall(BaseModel):
    id: Union[int, str]
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    status: ToolStatus = ToolStatus.REQUESTED


class ToolResult(BaseModel):
    tool_call_id: Union[int, str]
    name: str
    status: ToolStatus
    content: str = ""
    data: Any = None
    error: Optional[str] = None
    not_found: bool = False

    @property
    def is_error(self) -> bool:
        return self.status is ToolStatus.FAILED


class ShellResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exitCode: Optional[int] = None


class ConsentSource(Protocol):
    async def ask(self, tool_name: str, tool_input: Dict[str, Any]) -> bool: ...


class CapabilityBackend(Protocol):
    async def run_shell(self, command: str, cwd: Optional[str] = None) -> ShellResult: ...

    async def read_file(self, path: str) -> str:
        """Return the file's text; raise FileNotFoundError if it does not exist."""
        ...

    async def write_file(self, path: str, content: str) -> None: ...


# --- Policy consent sources ------------------------------------------------------

class AutoApprove:
    async def ask(self, tool_name: str, tool_input: Dict[str, Any]) -> bool:
        return True


class DenyAll:
    async def ask(self, tool_name: str, tool_input: Dict[str, Any]) -> bool:
        return False


class AllowList:
    """Approve only the listed tools (canonical names or aliases)."""

    def __init__(self, names: Collection[str]) -> None:
        self._allowed = {TOOL_ALIASES.get(name, name) for name in names}

    async def ask(self, tool_name: str, tool_input: Dict[str, Any]) -> bool:
        return TOOL_ALIASES.get(tool_name, tool_name) in self._allowed


# --- Executor --------------------------------------------------------------------

def canonical_tool_name(name: str) -> str:
    try:
        return TOOL_ALIASES[name]
    except KeyError:
        raise ToolExecutionError(f"Unknown tool: {name}") from None


class ToolExecutor:
    def __init__(self, consent: ConsentSource, backend: CapabilityBackend) -> None:
        self._consent = consent
        self._backend = backend

    async def ask_consent(self, tool_name: str, tool_input: Dict[str, Any]) -> bool:
        return await self._consent.ask(tool_name, tool_input)

    async def execute(self, call: ToolCall) -> ToolResult:
        """Run ``call`` if consent is given.

        Raises:
            ToolExecutionError: the tool name is not one this client provides.
        """
        name = canonical_tool_name(call.name)
        if not await self._consent.ask(name, call.input):
            call.status = ToolStatus.REJECTED
            logger.info("Tool call %s (%s) rejected", call.id, name)
            return ToolResult(
                tool_call_id=call.id,
                name=name,
                status=ToolStatus.REJECTED,
                content=f"The user declined to run {name}.",
            )
        call.status = ToolStatus.CONSENTED
        logger.debug("Running tool call %s (%s): %s", call.id, name, call.input)
        call.status = ToolStatus.RUNNING
        try:
            if name == TERMINAL_EXECUTE:
                content, data = await self._run_shell(call.input)
            elif name == FS_READ_TEXT_FILE:
                content, data = await self._read_file(call.input)
            else:
                content, data = await self._write_file(call.input)
        except FileNotFoundError as e:
            call.status = ToolStatus.FAILED
            return ToolResult(
                tool_call_id=call.id, name=name, status=call.status, error=f"File not found: {e.filename or e}", not_found=True
            )
        except ValidationError as e:
            call.status = ToolStatus.FAILED
            return ToolResult(tool_call_id=call.id, name=name, status=call.status, error=f"Invalid input for {name}: {e}")
        except Exception as e:  # noqa: BLE001
            logger.warning("Tool call %s (%s) failed: %s", call.id, name, e)
            call.status = ToolStatus.FAILED
            return ToolResult(tool_call_id=call.id, name=name, status=call.status, error=str(e) or type(e).__name__)

        call.status = ToolStatus.COMPLETED
        return ToolResult(tool_call_id=call.id, name=name, status=call.status, content=content, data=data)

    async def _run_shell(self, raw: Dict[str, Any]) -> tuple[str, Any]:
        args = ExecuteCommandInput.model_validate(raw)
        result = await self._backend.run_shell(args.command, cwd=args.cwd)
        content = result.stdout
        if result.exitCode:
            content = f"{result.stdout}{result.stderr}\n[exit code {result.exitCode}]"
        return content, result.model_dump()

    async def _read_file(self, raw: Dict[str, Any]) -> tuple[str, Any]:
        args = ReadTextFileInput.model_validate(raw)
        text = await self._backend.read_file(args.path)
        if args.line is not None or args.limit is not None:
            lines = text.splitlines(keepends=True)
            start = max((args.line or 1) - 1, 0)
            end = start + args.limit if args.limit is not None else None
            text = "".join(lines[start:end])
        return text, {"content": text}

    async def _write_file(self, raw: Dict[str, Any]) -> tuple[str, Any]:
        args = WriteTextFileInput.model_validate(raw)
        await self._backend.write_file(args.path, args.content)
        return "OK", None
