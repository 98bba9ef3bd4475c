import asyncio
from typing import List

import pytest

from _streams import _Server, wait_for
from acp_client import RequestError, RpcRouter, TransportError
from acp_client.schema import ErrorObject, Notification, PromptRequest, Request, Response


# --------------------- Test Doubles -----------------------

class TestDispatcher:
    __test__ = False  # prevent pytest from collecting this class

    def __init__(self) -> None:
        self.requests: List[Request] = []
        self.notifications: List[Notification] = []
        self.release = asyncio.Event()
        self.router = None

    async def handle_request(self, request: Request):
        self.requests.append(request)
        params = request.params or {}
        if request.method == "echo":
            await asyncio.sleep(params.get("delay", 0))
            return {"echo": params.get("n")}
        if request.method == "fail":
            raise RequestError.invalid_params({"field": "n"})
        if request.method == "crash":
            raise ValueError("boom")
        if request.method == "validate":
            PromptRequest.model_validate(params)
            return {}
        if request.method == "hang":
            await self.release.wait()
            return {}
        if request.method == "callback":
            inner = await self.router.call("echo", {"n": params.get("n")})
            return {"outer": inner}
        raise RequestError.method_not_found(request.method)

    async def handle_notification(self, notification: Notification) -> None:
        self.notifications.append(notification)


async def _pair(s: _Server, client_dispatcher=None, agent_dispatcher=None):
    client = RpcRouter(s.client_transport(), client_dispatcher)
    agent = RpcRouter(s.agent_transport(), agent_dispatcher)
    if agent_dispatcher is not None:
        agent_dispatcher.router = agent
    if client_dispatcher is not None:
        client_dispatcher.router = client
    tasks = [asyncio.create_task(client.run()), asyncio.create_task(agent.run())]
    return client, agent, tasks


async def _close(routers, tasks):
    for router in routers:
        await router.close()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


# ------------------------ Tests --------------------------

@pytest.mark.asyncio
async def test_responses_resolved_by_id_out_of_order():
    async with _Server() as s:
        agent_side = TestDispatcher()
        client, agent, tasks = await _pair(s, agent_dispatcher=agent_side)

        slow = asyncio.create_task(client.call("echo", {"n": 1, "delay": 0.1}))
        fast = asyncio.create_task(client.call("echo", {"n": 2}))
        assert await fast == {"echo": 2}
        assert not slow.done()
        assert await slow == {"echo": 1}
        assert client.pending_count == 0

        await _close([client, agent], tasks)


@pytest.mark.asyncio
async def test_request_ids_unique_under_concurrency():
    async with _Server() as s:
        agent_side = TestDispatcher()
        client, agent, tasks = await _pair(s, agent_dispatcher=agent_side)

        results = await asyncio.gather(*(client.call("echo", {"n": i}) for i in range(20)))
        assert [r["echo"] for r in results] == list(range(20))
        ids = [r.id for r in agent_side.requests]
        assert sorted(ids) == list(range(1, 21))

        await _close([client, agent], tasks)


@pytest.mark.asyncio
async def test_error_answers_raise_request_error():
    async with _Server() as s:
        client, agent, tasks = await _pair(s, agent_dispatcher=TestDispatcher())

        with pytest.raises(RequestError) as failed:
            await client.call("fail")
        assert failed.value.code == -32602
        assert failed.value.data == {"field": "n"}

        with pytest.raises(RequestError) as missing:
            await client.call("no/such/method")
        assert missing.value.code == -32601

        with pytest.raises(RequestError) as crashed:
            await client.call("crash")
        assert crashed.value.code == -32603
        assert crashed.value.data == {"details": "boom"}

        with pytest.raises(RequestError) as invalid:
            await client.call("validate", {"sessionId": 5})
        assert invalid.value.code == -32602

        await _close([client, agent], tasks)


@pytest.mark.asyncio
async def test_requests_without_dispatcher_get_method_not_found():
    async with _Server() as s:
        client, agent, tasks = await _pair(s)

        with pytest.raises(RequestError) as exc:
            await client.call("session/new", {})
        assert exc.value.code == -32601
        assert exc.value.data == {"method": "session/new"}

        await _close([client, agent], tasks)


@pytest.mark.asyncio
async def test_notifications_delivered_in_order():
    async with _Server() as s:
        client_side = TestDispatcher()
        client, agent, tasks = await _pair(s, client_dispatcher=client_side)

        for i in range(10):
            await agent.notify("session/update", {"seq": i})
        await wait_for(lambda: len(client_side.notifications) == 10)
        assert [n.params["seq"] for n in client_side.notifications] == list(range(10))

        await _close([client, agent], tasks)


@pytest.mark.asyncio
async def test_handler_may_call_back_before_answering():
    async with _Server() as s:
        client_side = TestDispatcher()
        agent_side = TestDispatcher()
        client, agent, tasks = await _pair(s, client_side, agent_side)

        assert await client.call("callback", {"n": 7}) == {"outer": {"echo": 7}}
        assert [r.method for r in client_side.requests] == ["echo"]

        await _close([client, agent], tasks)


@pytest.mark.asyncio
async def test_transport_close_fails_every_pending_call():
    async with _Server() as s:
        agent_side = TestDispatcher()
        client, agent, tasks = await _pair(s, agent_dispatcher=agent_side)

        calls = [asyncio.create_task(client.call("hang")) for _ in range(3)]
        await wait_for(lambda: len(agent_side.requests) == 3)
        assert client.pending_count == 3

        await agent.close()
        results = await asyncio.gather(*calls, return_exceptions=True)
        assert all(isinstance(r, TransportError) for r in results)
        assert client.pending_count == 0

        await tasks[0]
        with pytest.raises(TransportError):
            await client.call("echo", {"n": 1})

        await _close([client], tasks)


@pytest.mark.asyncio
async def test_response_with_unknown_id_is_dropped():
    async with _Server() as s:
        client, agent, tasks = await _pair(s, agent_dispatcher=TestDispatcher())

        await client.on_inbound(Response(id=999, result={"stray": True}))
        assert client.pending_count == 0
        assert await client.call("echo", {"n": 3}) == {"echo": 3}

        await _close([client, agent], tasks)


@pytest.mark.asyncio
async def test_error_answer_without_code_defaults_to_internal_error():
    async with _Server() as s:
        agent_side = TestDispatcher()
        client, agent, tasks = await _pair(s, agent_dispatcher=agent_side)

        call = asyncio.create_task(client.call("hang"))
        await wait_for(lambda: len(agent_side.requests) == 1)
        await client.on_inbound(Response(id=1, error=ErrorObject(data={"retry": False})))

        with pytest.raises(RequestError) as failed:
            await call
        assert failed.value.code == -32603
        assert str(failed.value) == "Error"
        assert failed.value.data == {"retry": False}

        agent_side.release.set()
        await _close([client, agent], tasks)
