import asyncio
import os
import sys
from pathlib import Path

from acp_client import (
    AutoApprove,
    ClientConfig,
    LocalCapabilities,
    ModelFallbackManager,
    SessionController,
    ToolExecutor,
)


async def main() -> None:
    # The simulator plays the agent: "fast" is out of quota, so the turn lands on "careful".
    root = Path(__file__).resolve().parent
    os.environ["PYTHONPATH"] = str(root.parent / "src") + os.pathsep + os.environ.get("PYTHONPATH", "")
    config = ClientConfig(
        agent_command=sys.executable,
        agent_args=["-m", "acp_client.simulator", "--model", "{model}", "--exhausted", "fast"],
        models=["fast", "careful"],
    )
    executor = ToolExecutor(AutoApprove(), LocalCapabilities(config.cwd))

    def make_controller(model: str) -> SessionController:
        return SessionController(config, model, executor, on_update=lambda u: print(f"update: {u.sessionUpdate} {u.text}", file=sys.stderr))

    manager = ModelFallbackManager(config.models, make_controller, on_switch=lambda old, new: print(f"{old} -> {new}", file=sys.stderr))
    try:
        turn = await manager.prompt("list the files here")
        print(f"[{manager.model}] {turn.stop_reason}: {turn.text}")
        for result in turn.tool_results:
            print(f"tool {result.name}: {result.status.value}")
    finally:
        await manager.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
