"""Shared pytest fixtures: fake OpenAI transports and companion builders."""

from __future__ import annotations

import os
from types import SimpleNamespace
from typing import Any, Callable, Iterable, cast

import pytest
from openai import AsyncOpenAI

from penpal.ai.client import AIClient, ClientSettings
from penpal.companion.orchestrator import CompanionOrchestrator, CompanionTimings
from penpal.services.settings import Settings


def completion(content: Any, finish_reason: str | None = "stop") -> SimpleNamespace:
    """Build an object shaped like ``openai.types.chat.ChatCompletion``."""

    message = SimpleNamespace(content=content, role="assistant")
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason=finish_reason)])


class FakeCompletions:
    """Replays scripted replies; exceptions in the script are raised."""

    def __init__(self, replies: Iterable[Any]):
        self._replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if not self._replies:
            raise AssertionError("No scripted replies left")
        reply = self._replies.pop(0) if len(self._replies) > 1 else self._replies[0]
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, str):
            return completion(reply)
        return reply


class FakeOpenAI:
    def __init__(self, replies: Iterable[Any]):
        self.completions = FakeCompletions(replies)
        self.chat = SimpleNamespace(completions=self.completions)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class ClientRecorder:
    """Client factory for the orchestrator that records every client it builds."""

    def __init__(self, replies: Iterable[Any]):
        self._replies = list(replies)
        self.transports: list[FakeOpenAI] = []
        self.settings_seen: list[Settings] = []

    def __call__(self, settings: Settings) -> AIClient:
        transport = FakeOpenAI(self._replies)
        self.transports.append(transport)
        self.settings_seen.append(settings)
        return AIClient(
            ClientSettings(
                base_url=settings.base_url,
                api_key=settings.api_key,
                model=settings.model,
                max_retries=1,
            ),
            client=cast(AsyncOpenAI, transport),
        )

    @property
    def calls(self) -> list[dict[str, Any]]:
        return [call for transport in self.transports for call in transport.completions.calls]


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("PENPAL_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_completion() -> Callable[..., SimpleNamespace]:
    return completion


@pytest.fixture
def fake_openai() -> Callable[..., FakeOpenAI]:
    return FakeOpenAI


@pytest.fixture
def fast_timings() -> CompanionTimings:
    return CompanionTimings(comment_delay=0.0, display_duration=0.01)


@pytest.fixture
def make_orchestrator(fast_timings: CompanionTimings):
    """Return a builder: ``make_orchestrator(*replies, api_key=..., draws=[...], **settings)``."""

    def _build(
        *replies: Any,
        api_key: str = "sk-test",
        draws: Iterable[float] | None = None,
        timings: CompanionTimings | None = None,
        **overrides: Any,
    ) -> tuple[CompanionOrchestrator, ClientRecorder]:
        recorder = ClientRecorder(replies or ["ok"])
        values = list(draws if draws is not None else [0.0])

        def _random() -> float:
            return values.pop(0) if len(values) > 1 else values[0]

        orchestrator = CompanionOrchestrator(
            Settings(api_key=api_key, **overrides),
            client_factory=recorder,
            random_source=_random,
            timings=timings or fast_timings,
        )
        return orchestrator, recorder

    return _build
