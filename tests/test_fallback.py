from typing import List

import pytest

from _streams import FakeBackend, RecordingConsent, SimulatorFarm
from acp_client import (
    AuthError,
    ClientConfig,
    ModelCandidateList,
    ModelFallbackManager,
    QuotaError,
    QuotaExhausted,
    RequestError,
    SessionController,
    ToolExecutor,
    is_quota_error,
)


@pytest.mark.parametrize(
    "error",
    [
        RequestError(429, "Too many requests"),
        RequestError(-32000, "RESOURCE_EXHAUSTED: quota exceeded for model a"),
        RequestError(-32603, "Internal error", {"details": "upstream returned an empty response"}),
        {"code": -32000, "message": "Rate limit reached"},
        "model is overloaded, try later",
        "upstream answered HTTP 429",
    ],
)
def test_quota_errors_are_recognised(error):
    assert is_quota_error(error)
    assert ModelFallbackManager.is_quota_error(error)


@pytest.mark.parametrize(
    "error",
    [
        RequestError.method_not_found("session/load"),
        RequestError.auth_required(),
        {"code": -32002, "message": "Resource not found"},
        "file not found",
        "request 14290 failed at line 4291",
    ],
)
def test_other_errors_are_not_quota_errors(error):
    assert not is_quota_error(error)


def test_candidate_list_only_moves_forward():
    with pytest.raises(ValueError):
        ModelCandidateList([])

    candidates = ModelCandidateList(["a", "b", "c"])
    assert candidates.current == "a" and candidates.has_next
    assert candidates.advance() == "b"
    assert candidates.advance() == "c"
    assert not candidates.has_next
    with pytest.raises(QuotaExhausted) as exc:
        candidates.advance()
    assert exc.value.models == ["a", "b", "c"]
    assert candidates.current == "c"


# ------------------- Scripted controllers ------------------

class ScriptedController:
    def __init__(self, model: str, start_error=None, prompt_error=None) -> None:
        self.model = model
        self.start_error = start_error
        self.prompt_error = prompt_error
        self.started = False
        self.stopped = False
        self.prompts: List[str] = []

    async def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def prompt(self, text):
        self.prompts.append(text)
        if self.prompt_error is not None:
            raise self.prompt_error
        return f"{self.model}: {text}"

    async def shutdown(self):
        self.stopped = True


def _factory(created, **errors):
    def make(model):
        controller = ScriptedController(model, **errors.get(model, {}))
        created.append(controller)
        return controller

    return make


@pytest.mark.asyncio
async def test_quota_during_start_moves_to_next_model():
    created, switches = [], []
    factory = _factory(created, a={"start_error": QuotaError("quota", model="a")})
    manager = ModelFallbackManager(["a", "b"], factory, on_switch=lambda old, new: switches.append((old, new)))

    controller = await manager.start()
    assert controller.model == "b" and controller.started
    assert created[0].stopped
    assert switches == [("a", "b")]
    assert not manager.switching


@pytest.mark.asyncio
async def test_quota_during_prompt_retries_on_next_model():
    created = []
    factory = _factory(created, a={"prompt_error": QuotaError("quota", model="a")})
    manager = ModelFallbackManager(["a", "b"], factory)

    assert await manager.prompt("hello") == "b: hello"
    assert [c.prompts for c in created] == [["hello"], ["hello"]]
    assert manager.model == "b"


@pytest.mark.asyncio
async def test_exhaustion_after_every_candidate_failed():
    created, switches = [], []
    error = {"start_error": QuotaError("quota")}
    factory = _factory(created, a=error, b=error, c=error)
    manager = ModelFallbackManager(["a", "b", "c"], factory, on_switch=lambda old, new: switches.append(new))

    with pytest.raises(QuotaExhausted) as exc:
        await manager.start()
    assert switches == ["b", "c"]
    assert len(created) == 3
    assert all(c.stopped for c in created)
    assert isinstance(exc.value.last_error, QuotaError)
    assert exc.value.models == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_non_quota_errors_do_not_switch_models():
    created = []
    factory = _factory(created, a={"start_error": AuthError("bad key")})
    manager = ModelFallbackManager(["a", "b"], factory)

    with pytest.raises(AuthError):
        await manager.start()
    assert [c.model for c in created] == ["a"]
    assert manager.model == "a"


# ------------------- Against the simulator -----------------

@pytest.mark.asyncio
async def test_resource_exhausted_model_is_replaced_by_a_fresh_session():
    switches = []
    async with SimulatorFarm(exhausted_models={"model-a"}) as farm:
        config = ClientConfig(models=["model-a", "model-b"])
        executor = ToolExecutor(RecordingConsent(), FakeBackend())

        def make(model):
            return SessionController(config, model, executor, transport_factory=farm)

        manager = ModelFallbackManager(config.models, make, on_switch=lambda old, new: switches.append((old, new)))
        first = await manager.start()
        assert first.session_id == "sess-model-a-1"

        turn = await manager.prompt("hello")

        assert turn.stop_reason == "end_turn"
        assert switches == [("model-a", "model-b")]
        assert manager.controller.session_id == "sess-model-b-1"
        assert manager.controller is not first
        assert first.router is None
        assert [a.model for a in farm.agents] == ["model-a", "model-b"]
        assert farm.agents[1].methods() == ["initialize", "session/new", "session/prompt"]
        await manager.shutdown()


@pytest.mark.asyncio
async def test_every_model_exhausted_ends_with_quota_exhausted():
    async with SimulatorFarm(exhausted_models={"a", "b"}) as farm:
        config = ClientConfig(models=["a", "b"])
        executor = ToolExecutor(RecordingConsent(), FakeBackend())
        manager = ModelFallbackManager(
            config.models, lambda m: SessionController(config, m, executor, transport_factory=farm)
        )

        with pytest.raises(QuotaExhausted):
            await manager.prompt("hello")
        assert len(farm.agents) == 2
