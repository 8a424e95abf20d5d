"""Chat message data models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Literal, Tuple

ChatRole = Literal["user", "companion"]

_WIRE_ROLES: Dict[str, str] = {"user": "user", "companion": "assistant"}


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """A single role-tagged turn inside the transcript."""

    role: ChatRole
    content: str

    def as_wire_message(self) -> Dict[str, str]:
        """Return the message in the chat-completions wire format."""

        return {"role": _WIRE_ROLES[self.role], "content": self.content}


Transcript = Tuple[ChatMessage, ...]

__all__ = ["ChatMessage", "ChatRole", "Transcript"]
