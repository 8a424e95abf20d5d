"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIStatusError, RateLimitError
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..chat.message_model import ChatMessage, Transcript

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    debug_logging: bool = False


@dataclass(frozen=True, slots=True)
class Candidate:
    """One generated alternative: its text parts and why generation stopped."""

    parts: tuple[str, ...] = ()
    finish_reason: str | None = None


@dataclass(frozen=True, slots=True)
class GenerationResult:
    """Normalized completion response.

    ``text`` is the convenience field: the first candidate's content when the
    server returned it as a plain string. ``candidates`` keeps the structured
    view, including content returned as a list of parts.
    """

    text: str = ""
    candidates: tuple[Candidate, ...] = field(default_factory=tuple)


class AIClient:
    """Async client exposing one-shot generation and persistent chat sessions."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        if not (settings.api_key or "").strip():
            raise ValueError("api_key is required to build an AI client")
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def generate(
        self,
        prompt: str,
        *,
        system_instruction: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> GenerationResult:
        """Run a historyless completion for ``prompt``."""

        messages: List[ChatCompletionMessageParam] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": prompt})
        return await self.complete(
            messages,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )

    async def complete(
        self,
        messages: Sequence[ChatCompletionMessageParam],
        *,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> GenerationResult:
        """Send ``messages`` as one chat completion request."""

        if not messages:
            raise ValueError("At least one message is required to request a completion")
        payload = self._build_chat_payload(
            messages=messages,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )
        LOGGER.debug(
            "Requesting chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        response = None
        async for attempt in self._retrying():
            with attempt:
                response = await self._client.chat.completions.create(**payload)
        return self._normalize_response(response)

    def start_chat(
        self,
        *,
        system_instruction: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        history: Sequence[ChatMessage] = (),
    ) -> ChatSession:
        """Open a multi-turn chat bound to this client."""

        return ChatSession(
            self,
            system_instruction=system_instruction,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            history=history,
        )

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIStatusError,
                    APIConnectionError,
                    RateLimitError,
                    httpx.TimeoutException,
                )
            ),
        )

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        temperature: float | None,
        max_output_tokens: int | None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [dict(message) for message in messages],
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_output_tokens is not None:
            payload["max_tokens"] = max_output_tokens
        return payload

    @staticmethod
    def _normalize_response(response: Any) -> GenerationResult:
        candidates: list[Candidate] = []
        for choice in getattr(response, "choices", None) or ():
            message = getattr(choice, "message", None)
            content = getattr(message, "content", None)
            candidates.append(
                Candidate(
                    parts=_content_parts(content),
                    finish_reason=getattr(choice, "finish_reason", None),
                )
            )
        text = ""
        first_choice = (getattr(response, "choices", None) or [None])[0]
        content = getattr(getattr(first_choice, "message", None), "content", None)
        if isinstance(content, str):
            text = content
        return GenerationResult(text=text, candidates=tuple(candidates))

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


class ChatSession:
    """Multi-turn chat whose history only advances on successful round-trips."""

    def __init__(
        self,
        client: AIClient,
        *,
        system_instruction: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        history: Sequence[ChatMessage] = (),
    ) -> None:
        self._client = client
        self._system_instruction = system_instruction
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens
        self._history: list[ChatMessage] = list(history)

    async def send(self, message: str) -> GenerationResult:
        """Send ``message`` with the full history and record the exchange."""

        messages: List[ChatCompletionMessageParam] = []
        if self._system_instruction:
            messages.append({"role": "system", "content": self._system_instruction})
        messages.extend(turn.as_wire_message() for turn in self._history)  # type: ignore[misc]
        messages.append({"role": "user", "content": message})

        result = await self._client.complete(
            messages,
            temperature=self._temperature,
            max_output_tokens=self._max_output_tokens,
        )
        reply = result.text or first_part_text(result)
        self._history.append(ChatMessage("user", message))
        self._history.append(ChatMessage("companion", reply))
        return result

    def history(self) -> Transcript:
        return tuple(self._history)


def _content_parts(content: Any) -> tuple[str, ...]:
    if content is None:
        return ()
    if isinstance(content, str):
        return (content,)
    parts: list[str] = []
    for part in content:
        if isinstance(part, Mapping):
            text = part.get("text")
        else:
            text = getattr(part, "text", None)
        if isinstance(text, str):
            parts.append(text)
    return tuple(parts)


def first_part_text(result: GenerationResult) -> str:
    """Return the first candidate's first text part, or an empty string."""

    if result.candidates and result.candidates[0].parts:
        return result.candidates[0].parts[0]
    return ""


__all__ = [
    "AIClient",
    "Candidate",
    "ChatSession",
    "ClientSettings",
    "GenerationResult",
    "first_part_text",
]
