"""A scripted stand-in for an ACP agent.

Speaks the agent side of the protocol over stdio (or any `Transport`) so the
client can be exercised without a real model behind it::

    python -m acp_client.simulator --framing header --model fast --exhausted fast

Prompts mentioning "list", "files", "check" or "run" make it ask the client
to run ``ls -la`` through ``sampling/createMessage``; "read" and "write" use
the direct file system requests. Models passed with ``--exhausted`` answer
every prompt with a RESOURCE_EXHAUSTED error.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Any, Collection, List, Optional, Union

from .errors import RequestError
from .framing import FRAMINGS, codec_for
from .meta import AGENT_METHODS, CLIENT_METHODS, PROTOCOL_VERSION
from .rpc import RpcRouter
from .schema import Notification, PromptRequest, Request
from .stdio import stdio_transport
from .transport import Transport

logger = logging.getLogger(__name__)

SHELL_KEYWORDS = ("list", "files", "check", "run")


class SimulatedAgent:
    def __init__(
        self,
        model: str = "sim-model",
        *,
        exhausted_models: Collection[str] = (),
        require_auth: bool = False,
        late_update: bool = False,
    ) -> None:
        self.model = model
        self.received: List[Union[Request, Notification]] = []
        self._exhausted = set(exhausted_models)
        self._require_auth = require_auth
        self._late_update = late_update
        self._authenticated = False
        self._sessions = 0
        self._tool_calls = 0
        self._router: Optional[RpcRouter] = None

    async def serve(self, transport: Transport) -> Optional[int]:
        self._router = RpcRouter(transport, self)
        try:
            return await self._router.run()
        finally:
            await self._router.close()

    def methods(self) -> List[str]:
        return [m.method for m in self.received]

    async def handle_notification(self, notification: Notification) -> None:
        self.received.append(notification)
        logger.debug("notification %s %s", notification.method, notification.params)

    async def handle_request(self, request: Request) -> Any:
        self.received.append(request)
        method = request.method
        params = request.params or {}
        if method == AGENT_METHODS["initialize"]:
            return {
                "protocolVersion": params.get("protocolVersion", PROTOCOL_VERSION),
                "agentInfo": {"name": f"Simulator ({self.model})", "version": "1.0"},
                "agentCapabilities": {"loadSession": False},
                "authMethods": [{"id": "api-key", "name": "API key"}] if self._require_auth else [],
            }
        if method in (AGENT_METHODS["authenticate"], AGENT_METHODS["session_auth"]):
            key = params.get("apiKey") or (params.get("auth") or {}).get("apiKey")
            if not key:
                raise RequestError.auth_required({"method": method})
            self._authenticated = True
            return {}
        if method == AGENT_METHODS["session_new"]:
            self._sessions += 1
            return {"sessionId": f"sess-{self.model}-{self._sessions}"}
        if method == AGENT_METHODS["session_prompt"]:
            return await self._prompt(PromptRequest.model_validate(params))
        raise RequestError.method_not_found(method)

    async def _prompt(self, request: PromptRequest) -> Any:
        if self._require_auth and not self._authenticated:
            raise RequestError.auth_required()
        if self.model in self._exhausted:
            raise RequestError(-32000, f"RESOURCE_EXHAUSTED: quota exceeded for model {self.model}")

        session_id = request.sessionId
        text = " ".join(block.text for block in request.prompt).lower()
        await self._update(session_id, "agent_thought_chunk", content={"type": "text", "text": f"Considering: {text}"})
        if any(word in text for word in SHELL_KEYWORDS):
            await self._run_listing(session_id)
        elif "read" in text:
            await self._read_readme(session_id)
        elif "write" in text:
            await self._write_notes(session_id)
        else:
            await self._say(session_id, "I am ready. Ask me to 'list files' or 'read a file'.")

        if self._late_update:
            asyncio.get_running_loop().call_later(0.05, self._spawn_say, session_id, " (done)")
        return {"stopReason": "end_turn"}

    async def _run_listing(self, session_id: str) -> None:
        assert self._router is not None
        self._tool_calls += 1
        call_id = f"call_{self._tool_calls:03d}"
        await self._say(session_id, "I will run a command to check files.")
        await self._update(session_id, "tool_call", toolCallId=call_id, title="ls -la", kind="execute", status="pending")
        reply = await self._router.call(
            CLIENT_METHODS["sampling_create_message"],
            {
                "messages": [{"role": "assistant", "content": "I need to check the system."}],
                "content": [
                    {"type": "text", "text": "I will run a command to check files."},
                    {"type": "tool_use", "id": call_id, "name": "terminal/execute", "input": {"command": "ls -la"}},
                ],
            },
        )
        block = reply["content"][0]
        await self._update(session_id, "tool_call_update", toolCallId=call_id, status=block["status"])
        if block["status"] == "rejected":
            await self._say(session_id, "Understood, I will not run the command.")
        elif block["is_error"]:
            await self._say(session_id, f"The command failed: {block['content']}")
        else:
            await self._say(session_id, f"The directory has {len(block['content'].splitlines())} entries.")

    async def _read_readme(self, session_id: str) -> None:
        assert self._router is not None
        try:
            result = await self._router.call(CLIENT_METHODS["fs_read_text_file"], {"sessionId": session_id, "path": "README.md"})
        except RequestError as e:
            await self._say(session_id, f"Could not read README.md: {e}")
            return
        await self._say(session_id, f"README.md has {len(result['content'])} characters.")

    async def _write_notes(self, session_id: str) -> None:
        assert self._router is not None
        try:
            await self._router.call(
                CLIENT_METHODS["fs_write_text_file"],
                {"sessionId": session_id, "path": "notes.txt", "content": "hello from the simulator\n"},
            )
        except RequestError as e:
            await self._say(session_id, f"Could not write notes.txt: {e}")
            return
        await self._say(session_id, "Wrote notes.txt.")

    async def _say(self, session_id: str, text: str) -> None:
        await self._update(session_id, "agent_message_chunk", content={"type": "text", "text": text})

    def _spawn_say(self, session_id: str, text: str) -> None:
        asyncio.ensure_future(self._say(session_id, text))

    async def _update(self, session_id: str, update_kind: str, **fields: Any) -> None:
        assert self._router is not None
        await self._router.notify(
            CLIENT_METHODS["session_update"],
            {"sessionId": session_id, "update": {"sessionUpdate": update_kind, **fields}},
        )


async def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="acp-simulator", description="Simulated ACP agent over stdio.")
    parser.add_argument("--framing", choices=FRAMINGS, default="newline")
    parser.add_argument("--model", default=os.environ.get("ACP_MODEL", "sim-model"))
    parser.add_argument("--exhausted", action="append", default=[], metavar="MODEL", help="Model that answers prompts with a quota error")
    parser.add_argument("--require-auth", action="store_true")
    parser.add_argument("--late-update", action="store_true", help="Send one more update after each turn ends")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, stream=sys.stderr, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    agent = SimulatedAgent(
        args.model,
        exhausted_models=args.exhausted,
        require_auth=args.require_auth,
        late_update=args.late_update,
    )
    logger.info("Simulator for model %s ready (%s framing)", args.model, args.framing)
    await agent.serve(await stdio_transport(codec_for(args.framing)))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
