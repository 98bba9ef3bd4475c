from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass
from typing import AsyncIterator, Mapping, Optional, Sequence, Union

from .errors import TransportError
from .framing import FrameCodec
from .schema import Message

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
TERMINATE_GRACE_SECONDS = 2.0
CONNECT_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class TransportClosed:
    """Last item of `Transport.messages`: the stream ended or the process exited."""

    returncode: Optional[int] = None


class Transport:
    """
    Duplex byte stream to an agent, framed by a `FrameCodec`.

    Either wraps an existing asyncio StreamReader/StreamWriter pair (stdio,
    sockets) or owns a child process spawned with `Transport.spawn`, in
    which case `close()` also terminates that process.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        codec: FrameCodec,
        process: Optional[asyncio.subprocess.Process] = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._codec = codec
        self._process = process
        self._write_lock = asyncio.Lock()
        self._closed = False
        self._consumed = False

    @classmethod
    async def spawn(
        cls,
        command: str,
        args: Sequence[str] = (),
        *,
        codec: FrameCodec,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> "Transport":
        child_env = os.environ.copy()
        if env:
            child_env.update(env)
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=child_env,
                cwd=cwd,
            )
        except OSError as e:
            raise TransportError(f"Failed to spawn {command!r}: {e}") from e
        assert proc.stdin is not None and proc.stdout is not None
        logger.debug("Spawned agent pid=%s: %s %s", proc.pid, command, " ".join(args))
        return cls(proc.stdout, proc.stdin, codec, proc)

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int,
        *,
        codec: FrameCodec,
        timeout: float = CONNECT_TIMEOUT_SECONDS,
    ) -> "Transport":
        """Open a TCP stream to an agent that is already listening."""
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        except (asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Failed to connect to {host}:{port}: {e!r}") from e
        logger.debug("Connected to agent at %s:%s", host, port)
        return cls(reader, writer, codec)

    @property
    def codec(self) -> FrameCodec:
        return self._codec

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process is not None else None

    async def write(self, data: bytes) -> None:
        if self._closed or self._writer.is_closing():
            raise TransportError("Transport is closed")
        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, RuntimeError) as e:
                raise TransportError(f"Write failed: {e}") from e

    async def send(self, message: Message) -> None:
        await self.write(self._codec.encode(message))

    async def messages(self) -> AsyncIterator[Union[Message, TransportClosed]]:
        """Yield decoded messages in arrival order, then a `TransportClosed` marker.

        The stream can be consumed once; a fresh Transport is needed to read again.
        """
        if self._consumed:
            raise TransportError("Transport message stream already consumed")
        self._consumed = True
        try:
            while not self._closed:
                try:
                    data = await self._reader.read(READ_CHUNK_SIZE)
                except (ConnectionError, OSError) as e:
                    logger.warning("Read failed: %s", e)
                    break
                if not data:
                    break
                for message in self._codec.feed(data):
                    yield message
            if self._codec.pending:
                logger.warning("Discarding %d bytes of incomplete frame at end of stream", self._codec.pending)
            yield TransportClosed(await self._wait_exit())
        finally:
            if self._process is not None and self._process.returncode is None:
                await self.close()

    async def _wait_exit(self) -> Optional[int]:
        if self._process is None:
            return None
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._process.wait(), TERMINATE_GRACE_SECONDS)
        return self._process.returncode

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        with contextlib.suppress(Exception):
            await self._writer.wait_closed()
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
        logger.debug("Agent pid=%s exited with %s", proc.pid, proc.returncode)
