"""Command line front end: ``acp-client [options] -- COMMAND [ARGS...]``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from prompt_toolkit import PromptSession
from prompt_toolkit.key_binding import KeyBindings
from pydantic import ValidationError

from .capabilities import LocalCapabilities
from .config import ENV_FILE, ClientConfig, load_config
from .errors import AuthError, QuotaExhausted, RequestError, TransportError
from .fallback import ModelFallbackManager
from .framing import FRAMINGS
from .persistence import SessionStore
from .schema import SessionUpdate
from .session import Phase, SessionController
from .tools import AutoApprove, ConsentSource, DenyAll, ToolExecutor

logger = logging.getLogger(__name__)

QUIT = "/quit"
CANCEL = "/cancel"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="acp-client",
        description="Drive an ACP agent over stdio, falling back across models when quota runs out.",
    )
    parser.add_argument("--env-file", default=ENV_FILE, help="dotenv file with ACP_* settings (default: .env)")
    parser.add_argument("--model", action="append", dest="models", metavar="MODEL", help="Candidate model, in order; repeatable")
    parser.add_argument("--framing", choices=FRAMINGS, help="Wire framing used with the agent")
    parser.add_argument("--connect", metavar="HOST:PORT|auto", help="Talk to a running agent adapter instead of spawning one")
    parser.add_argument("--adapter-file", help="Adapter info file read by --connect auto")
    parser.add_argument("--auth-method", choices=("authenticate", "session/auth"))
    parser.add_argument("--require-auth", action="store_true", default=None, help="Always authenticate after initialize")
    consent = parser.add_mutually_exclusive_group()
    consent.add_argument("--yes", action="store_true", help="Approve every tool call without asking")
    consent.add_argument("--deny", action="store_true", help="Reject every tool call without asking")
    parser.add_argument("--prompt", action="append", default=[], help="Prompt to send instead of reading the terminal; repeatable")
    parser.add_argument("--log-level", help="Logging level (default: WARNING)")
    parser.add_argument("--log-file", help="Write logs here instead of stderr")
    parser.add_argument("--cwd", help="Working directory for the session and for tool calls")
    parser.add_argument("agent", nargs=argparse.REMAINDER, help="Agent command and its arguments")
    return parser


def setup_logging(level: str = "WARNING", log_file: Optional[str] = None) -> None:
    """Route log records to ``log_file`` if given, else to stderr."""
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    handler: logging.Handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler(sys.stderr)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[handler],
    )


class ConsoleConsent:
    """Ask on the terminal before every tool call."""

    async def ask(self, tool_name: str, tool_input: Dict[str, Any]) -> bool:
        detail = tool_input.get("command") or tool_input.get("path") or tool_input
        try:
            answer = await asyncio.to_thread(input, f"\nAllow {tool_name} ({detail})? [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")


def print_update(update: SessionUpdate) -> None:
    kind = update.sessionUpdate
    if kind == "agent_message_chunk":
        sys.stdout.write(update.text)
        sys.stdout.flush()
    elif kind == "agent_thought_chunk":
        print(f"[thinking] {update.text}", file=sys.stderr)
    elif kind in ("tool_call", "tool_call_update"):
        extra = update.model_extra or {}
        label = extra.get("title") or extra.get("toolCallId", "tool")
        print(f"[tool] {label}: {extra.get('status', '')}", file=sys.stderr)


def _key_bindings() -> KeyBindings:
    kb = KeyBindings()

    @kb.add("escape")
    def _(event):  # type: ignore
        if not event.app.is_done:
            event.app.exit(result=CANCEL)

    return kb


async def _read_prompts(prompts: Sequence[str], repl: Optional[PromptSession] = None) -> AsyncIterator[str]:
    """Yield prompts from ``prompts``, or from the terminal until EOF or /quit.

    Escape at the input line yields `CANCEL`, as does typing /cancel.
    """
    if prompts:
        for prompt in prompts:
            yield prompt
        return
    session: PromptSession = repl or PromptSession(key_bindings=_key_bindings())
    while True:
        try:
            line = await session.prompt_async("> ")
        except EOFError:
            return
        except KeyboardInterrupt:
            print("", file=sys.stderr)
            continue
        line = line.strip()
        if line == QUIT:
            return
        if line:
            yield line


def _agent_status(manager: ModelFallbackManager, error: Optional[TransportError] = None) -> Optional[int]:
    if error is not None and error.exit_code is not None:
        return error.exit_code
    return manager.controller.exit_code if manager.controller is not None else None


async def run(
    config: ClientConfig,
    prompts: Sequence[str] = (),
    consent: Optional[ConsentSource] = None,
    repl: Optional[PromptSession] = None,
) -> int:
    store = SessionStore(config.session_file)
    previous = store.load()
    if previous is not None:
        print(f"Previous session {previous.sessionId} (last active {previous.lastActive:%Y-%m-%d %H:%M:%S})", file=sys.stderr)

    executor = ToolExecutor(consent or ConsoleConsent(), LocalCapabilities(config.cwd))

    def make_controller(model: str) -> SessionController:
        return SessionController(config, model, executor, store=store, on_update=print_update)

    def announce_switch(old: str, new: str) -> None:
        print(f"[{old} is out of quota, switching to {new}]", file=sys.stderr)

    manager = ModelFallbackManager(config.models, make_controller, on_switch=announce_switch)
    try:
        controller = await manager.start()
        print(f"Connected to {manager.model} (session {controller.session_id})", file=sys.stderr)
        async for text in _read_prompts(prompts, repl):
            if text == CANCEL:
                if manager.controller is not None:
                    await manager.controller.cancel()
                print("[cancelled]", file=sys.stderr)
                continue
            try:
                turn = await manager.prompt(text)
            except RequestError as e:
                print(f"error: {e}", file=sys.stderr)
                continue
            if turn.text and not turn.updates:
                sys.stdout.write(turn.text)
            print()
            logger.info("Turn finished with %s", turn.stop_reason)
        # the agent may have gone away on its own after the last turn
        if manager.controller is not None and manager.controller.phase is Phase.TERMINATED:
            code = manager.controller.exit_code
            if code:
                print(f"error: agent exited with status {code}", file=sys.stderr)
                return code
        return 0
    except (QuotaExhausted, AuthError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except TransportError as e:
        print(f"error: {e}", file=sys.stderr)
        await manager.shutdown()
        return _agent_status(manager, e) or 1
    finally:
        await manager.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    agent = list(args.agent)
    if agent and agent[0] == "--":
        agent = agent[1:]

    overrides: Dict[str, Any] = {
        "models": args.models,
        "framing": args.framing,
        "connect": args.connect,
        "adapter_file": args.adapter_file,
        "cwd": args.cwd,
        "log_level": args.log_level,
        "log_file": args.log_file,
        "auth_method": args.auth_method,
        "auth_required": args.require_auth,
    }
    if agent:
        overrides["agent_command"] = agent[0]
        overrides["agent_args"] = agent[1:]
    try:
        config = load_config(args.env_file, overrides=overrides)
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2

    setup_logging(config.log_level, config.log_file)
    consent: ConsentSource = AutoApprove() if args.yes else DenyAll() if args.deny else ConsoleConsent()
    try:
        return asyncio.run(run(config, args.prompt, consent))
    except KeyboardInterrupt:
        return 130
