"""The single ongoing multi-turn conversation behind the chat surface."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..ai.client import AIClient, ChatSession, first_part_text
from ..chat.message_model import ChatMessage, Transcript
from .prompts import SESSION_APOLOGY, system_instruction

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """Parameters fixed for the lifetime of one session instance."""

    system_instruction: str
    temperature: float = 0.8
    max_output_tokens: int = 2048

    @classmethod
    def for_companion(cls, companion_name: str) -> SessionConfig:
        return cls(system_instruction=system_instruction(companion_name))


class ConversationSession:
    """Owns the transcript and the remote chat it mirrors.

    A session is never mutated into a different persona. Renaming the
    companion or swapping credentials means building a new instance, which
    starts from an empty transcript.
    """

    def __init__(self, client: AIClient, config: SessionConfig) -> None:
        self._config = config
        self._chat: ChatSession = client.start_chat(
            system_instruction=config.system_instruction,
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
        )
        self._transcript: Transcript = ()

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def transcript(self) -> Transcript:
        return self._transcript

    async def send(self, user_text: str) -> str:
        """Send ``user_text`` and return the companion's reply.

        Callers reject blank input before getting here. Any failure returns
        :data:`SESSION_APOLOGY` and leaves the transcript untouched.
        """

        try:
            result = await self._chat.send(user_text)
        except Exception:
            LOGGER.warning("Chat session send failed", exc_info=True)
            return SESSION_APOLOGY

        reply = (result.text or first_part_text(result)).strip()
        canonical = self._chat.history()
        if canonical:
            self._transcript = tuple(canonical)
        else:
            self._transcript = self._transcript + (
                ChatMessage("user", user_text),
                ChatMessage("companion", reply),
            )
        LOGGER.debug("Chat transcript now holds %s message(s)", len(self._transcript))
        return reply


__all__ = ["ConversationSession", "SessionConfig"]
