import asyncio
import json

import pytest
from pydantic import ValidationError

from _streams import FakeBackend, RecordingConsent
from acp_client import ClientConfig, Phase, SessionController, ToolExecutor, TransportError
from acp_client.adapters import AdapterEndpoint, discover_adapter, parse_endpoint, read_adapter_file, resolve_endpoint
from acp_client.framing import codec_for
from acp_client.simulator import SimulatedAgent
from acp_client.transport import Transport


class _Listener:
    """A TCP server running one `SimulatedAgent` per accepted connection."""

    def __init__(self, framing: str = "newline") -> None:
        self.framing = framing
        self.agents = []
        self._tasks = []
        self._server = None
        self.port = None

    async def __aenter__(self):
        async def handle(reader, writer):
            agent = SimulatedAgent("adapter")
            self.agents.append(agent)
            self._tasks.append(asyncio.create_task(agent.serve(Transport(reader, writer, codec_for(self.framing)))))

        self._server = await asyncio.start_server(handle, host="127.0.0.1", port=0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, exc_type, exc, tb):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._server.close()
        await self._server.wait_closed()


def test_zed_and_cursor_adapter_files(tmp_path):
    zed = tmp_path / "adapter_info.json"
    zed.write_text(json.dumps({"host": "localhost", "port": 4123, "path": "/acp"}))
    cursor = tmp_path / "bridge.json"
    cursor.write_text(json.dumps({"url": "ws://127.0.0.1:5001/agent"}))

    assert read_adapter_file(zed) == AdapterEndpoint(host="localhost", port=4123, path="/acp")
    assert read_adapter_file(cursor).url == "ws://127.0.0.1:5001/agent"
    assert discover_adapter([tmp_path / "missing.json", cursor, zed]).port == 5001
    assert discover_adapter([tmp_path / "missing.json"]) is None


def test_broken_adapter_file_is_a_transport_error(tmp_path):
    broken = tmp_path / "adapter_info.json"
    broken.write_text("{not json")
    with pytest.raises(TransportError):
        read_adapter_file(broken)
    broken.write_text(json.dumps({"url": "ws://no-port"}))
    with pytest.raises(TransportError):
        discover_adapter([broken])


def test_parse_endpoint():
    assert parse_endpoint("127.0.0.1:9000") == AdapterEndpoint(host="127.0.0.1", port=9000)
    assert parse_endpoint("tcp://example.org:7/x").path == "/x"
    for bad in ("9000", "host:", ":9000", "host:port"):
        with pytest.raises(ValueError):
            parse_endpoint(bad)


def test_connect_setting_is_validated():
    assert ClientConfig(connect="AUTO").connect == "auto"
    assert ClientConfig(connect="localhost:8123").connect == "localhost:8123"
    with pytest.raises(ValidationError):
        ClientConfig(connect="localhost")


def test_auto_without_adapter_file_fails(tmp_path):
    with pytest.raises(TransportError) as missing:
        resolve_endpoint("auto", str(tmp_path / "adapter_info.json"))
    assert "open Zed or Cursor first" in str(missing.value)


@pytest.mark.asyncio
async def test_connect_refused_is_a_transport_error():
    server = await asyncio.start_server(lambda r, w: None, host="127.0.0.1", port=0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    with pytest.raises(TransportError):
        await Transport.connect("127.0.0.1", port, codec=codec_for("newline"), timeout=1.0)


@pytest.mark.asyncio
@pytest.mark.parametrize("framing", ["newline", "header"])
async def test_session_over_discovered_adapter(tmp_path, framing):
    async with _Listener(framing) as listener:
        adapter_file = tmp_path / "adapter_info.json"
        adapter_file.write_text(json.dumps({"host": "127.0.0.1", "port": listener.port, "path": "/"}))
        config = ClientConfig(models=["adapter"], framing=framing, connect="auto", adapter_file=str(adapter_file))
        controller = SessionController(config, "adapter", ToolExecutor(RecordingConsent(), FakeBackend()))

        await controller.start()
        assert controller.session_id == "sess-adapter-1"
        turn = await controller.prompt("list files")
        assert turn.stop_reason == "end_turn"
        assert "The directory has 2 entries." in turn.text

        await controller.shutdown()
        assert controller.phase is Phase.TERMINATED
        assert listener.agents[0].methods()[:2] == ["initialize", "session/new"]
