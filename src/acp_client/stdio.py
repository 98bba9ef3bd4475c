from __future__ import annotations

import asyncio
import sys
from typing import Optional, Tuple

from .framing import FrameCodec
from .transport import Transport


class _StdoutProtocol(asyncio.BaseProtocol):
    """Write-pipe protocol with the flow control StreamWriter.drain() expects."""

    def __init__(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._paused = False
        self._drain_waiter: Optional[asyncio.Future[None]] = None

    def pause_writing(self) -> None:  # type: ignore[override]
        self._paused = True
        if self._drain_waiter is None:
            self._drain_waiter = self._loop.create_future()

    def resume_writing(self) -> None:  # type: ignore[override]
        self._paused = False
        waiter, self._drain_waiter = self._drain_waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    async def _drain_helper(self) -> None:
        if self._paused and self._drain_waiter is not None:
            await self._drain_waiter


async def stdio_streams() -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Non-blocking StreamReader/StreamWriter over this process's stdin/stdout."""
    loop = asyncio.get_running_loop()

    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    protocol = _StdoutProtocol()
    transport, _ = await loop.connect_write_pipe(lambda: protocol, sys.stdout)
    writer = asyncio.StreamWriter(transport, protocol, None, loop)
    return reader, writer


async def stdio_transport(codec: FrameCodec) -> Transport:
    """A `Transport` speaking to whoever spawned this process."""
    reader, writer = await stdio_streams()
    return Transport(reader, writer, codec)
