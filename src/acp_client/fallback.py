from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Sequence, Union

from pydantic import BaseModel

from .errors import QuotaError, QuotaExhausted, RequestError

if TYPE_CHECKING:
    from .session import SessionController, TurnResult

logger = logging.getLogger(__name__)

QUOTA_MARKERS = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "quota",
    "resource_exhausted",
    "resource exhausted",
    "too many requests",
    "empty response",
    "empty_response",
    "internal error",
    "internal_error",
    "overloaded",
)

HTTP_429 = re.compile(r"\b429\b")


def _error_text(error: Any) -> str:
    if isinstance(error, RequestError):
        parts = [str(error)]
        if error.data is not None:
            parts.append(json.dumps(error.data, default=str))
        return " ".join(parts)
    if isinstance(error, BaseModel):
        return error.model_dump_json()
    if isinstance(error, (dict, list)):
        return json.dumps(error, default=str)
    return str(error)


def is_quota_error(error: Any) -> bool:
    """Heuristically decide whether ``error`` means "this model is out of capacity".

    Works on RequestError, error dicts/models, exceptions and plain strings by
    looking for well-known markers in their text.
    """
    code = getattr(error, "code", None)
    if code is None and isinstance(error, dict):
        code = error.get("code")
    if code == 429:
        return True
    text = _error_text(error).lower()
    return any(marker in text for marker in QUOTA_MARKERS) or HTTP_429.search(text) is not None


class ModelCandidateList:
    """Ordered models to try; the position only moves forward."""

    def __init__(self, models: Sequence[str]) -> None:
        if not models:
            raise ValueError("at least one candidate model is required")
        self._models = list(models)
        self._index = 0

    def __len__(self) -> int:
        return len(self._models)

    @property
    def models(self) -> List[str]:
        return list(self._models)

    @property
    def index(self) -> int:
        return self._index

    @property
    def current(self) -> str:
        return self._models[self._index]

    @property
    def has_next(self) -> bool:
        return self._index + 1 < len(self._models)

    def advance(self) -> str:
        """Move to the next model and return it.

        Raises:
            QuotaExhausted: there is no further candidate.
        """
        if not self.has_next:
            raise QuotaExhausted(self._models)
        self._index += 1
        return self.current


ControllerFactory = Callable[[str], "SessionController"]
SwitchCallback = Callable[[str, str], None]


class ModelFallbackManager:
    """
    Supervises one `SessionController` at a time.

    A `QuotaError` anywhere in the session lifecycle tears the controller
    (and its transport) down, moves to the next candidate model and starts a
    fresh controller from the handshake. Prompts that failed that way are
    re-sent on the new session.
    """

    is_quota_error = staticmethod(is_quota_error)

    def __init__(
        self,
        candidates: Union[ModelCandidateList, Sequence[str]],
        controller_factory: ControllerFactory,
        *,
        on_switch: Optional[SwitchCallback] = None,
    ) -> None:
        self._candidates = candidates if isinstance(candidates, ModelCandidateList) else ModelCandidateList(candidates)
        self._factory = controller_factory
        self._on_switch = on_switch
        self._controller: Optional[SessionController] = None
        self._switching = False

    @property
    def candidates(self) -> ModelCandidateList:
        return self._candidates

    @property
    def model(self) -> str:
        return self._candidates.current

    @property
    def switching(self) -> bool:
        return self._switching

    @property
    def controller(self) -> Optional["SessionController"]:
        return self._controller

    async def start(self) -> "SessionController":
        """Bring up a session, falling back across candidates as needed.

        Raises:
            QuotaExhausted: every remaining candidate hit a quota error.
        """
        while True:
            controller = self._factory(self._candidates.current)
            self._controller = controller
            try:
                await controller.start()
            except QuotaError as e:
                await self._fall_back(e)
                continue
            except BaseException:
                await controller.shutdown()
                raise
            return controller

    async def prompt(self, text: str) -> "TurnResult":
        if self._controller is None:
            await self.start()
        while True:
            assert self._controller is not None
            try:
                return await self._controller.prompt(text)
            except QuotaError as e:
                await self._fall_back(e)
                await self.start()

    async def _fall_back(self, error: QuotaError) -> None:
        self._switching = True
        try:
            if self._controller is not None:
                await self._controller.shutdown()
                self._controller = None
            old = self._candidates.current
            try:
                new = self._candidates.advance()
            except QuotaExhausted as exhausted:
                exhausted.last_error = error
                logger.error("Model %s hit a quota error and no candidates remain: %s", old, error)
                raise
            logger.info("Model %s hit a quota error (%s); falling back to %s", old, error, new)
            if self._on_switch is not None:
                self._on_switch(old, new)
        finally:
            self._switching = False

    async def shutdown(self) -> None:
        if self._controller is not None:
            await self._controller.shutdown()
