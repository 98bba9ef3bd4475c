from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Optional, Union

from .tools import ShellResult

logger = logging.getLogger(__name__)


class LocalCapabilities:
    """
    Capability backend acting on the local machine, relative to ``root``.

    No sandboxing: commands run with the client's privileges and paths may
    point anywhere the client can reach.
    """

    def __init__(self, root: Union[str, Path] = ".", timeout: float = 120.0) -> None:
        self.root = Path(root)
        self.timeout = timeout

    def _resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        return candidate if candidate.is_absolute() else self.root / candidate

    async def run_shell(self, command: str, cwd: Optional[str] = None) -> ShellResult:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self._resolve(cwd)) if cwd else str(self.root),
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise TimeoutError(f"Command timed out after {self.timeout:g}s: {command}") from None
        logger.debug("Shell command %r exited with %s", command, proc.returncode)
        return ShellResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exitCode=proc.returncode,
        )

    async def read_file(self, path: str) -> str:
        return await asyncio.to_thread(self._resolve(path).read_text, encoding="utf-8")

    async def write_file(self, path: str, content: str) -> None:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)
