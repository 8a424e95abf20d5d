"""View models for the presence line and the chat panel.

Neither view renders anything. Hosts subscribe a callback and redraw from
``text`` / ``entries`` however they like.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Literal

from ..chat.message_model import Transcript
from ..ui.events import ChatActivityChanged, PresenceChanged, TranscriptChanged
from . import prompts
from .orchestrator import CompanionOrchestrator
from .trigger_gate import PresencePhase

LOGGER = logging.getLogger(__name__)

EntryKind = Literal["user", "ai", "system"]
Listener = Callable[[], None]

USER_SENDER = "Me"
SYSTEM_SENDER = "System"
THINKING_TEXT = "Thinking..."


@dataclass(frozen=True, slots=True)
class ChatEntry:
    sender: str
    text: str
    kind: EntryKind
    pending: bool = False


class _Observable:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                LOGGER.exception("View listener %r failed", listener)


class PresenceChannel(_Observable):
    """Mirrors the orchestrator's presence line."""

    def __init__(self, orchestrator: CompanionOrchestrator) -> None:
        super().__init__()
        presence = orchestrator.presence
        self._text = presence.text
        self._phase = presence.phase
        orchestrator.bus.subscribe(PresenceChanged, self._on_presence_changed)

    @property
    def text(self) -> str:
        return self._text

    @property
    def phase(self) -> PresencePhase:
        return self._phase

    def _on_presence_changed(self, event: PresenceChanged) -> None:
        self._text = event.text
        self._phase = event.phase
        self._notify()


class ChatSurface(_Observable):
    """Chat panel model: transcript rows plus transient pending/system rows."""

    def __init__(self, orchestrator: CompanionOrchestrator) -> None:
        super().__init__()
        self._orchestrator = orchestrator
        self._entries: list[ChatEntry] = []
        self._notices: list[ChatEntry] = []
        self._pending = False
        self._version = 0
        bus = orchestrator.bus
        bus.subscribe(TranscriptChanged, self._on_transcript_changed)
        bus.subscribe(ChatActivityChanged, self._on_activity_changed)
        self.load_history()

    @property
    def entries(self) -> tuple[ChatEntry, ...]:
        rows = list(self._entries) + list(self._notices)
        if self._pending:
            rows.append(ChatEntry(self._companion_name, THINKING_TEXT, "ai", pending=True))
        return tuple(rows)

    @property
    def pending(self) -> bool:
        return self._pending

    def load_history(self) -> None:
        """Rebuild rows from the orchestrator's transcript."""

        self._render(self._orchestrator.transcript)
        self._notify()

    async def submit(self, text: str) -> str | None:
        """Send ``text`` from the input box; blank input is ignored."""

        message = (text or "").strip()
        if not message:
            return None
        if not self._orchestrator.configured:
            self._notices.append(ChatEntry(SYSTEM_SENDER, prompts.CHAT_MISSING_KEY_NOTICE, "system"))
            self._notify()
            return None
        self._notices.append(ChatEntry(USER_SENDER, message, "user"))
        self._notify()
        version = self._version
        reply = await self._orchestrator.send_interactive(message)
        if self._version == version:
            # Failed sends leave the transcript alone; keep the exchange visible anyway.
            self._notices.append(ChatEntry(self._companion_name, reply, "ai"))
            self._notify()
        return reply

    @property
    def _companion_name(self) -> str:
        return self._orchestrator.settings.companion_name

    def _render(self, transcript: Transcript) -> None:
        self._notices.clear()
        if not transcript:
            self._entries = [ChatEntry(self._companion_name, prompts.CHAT_WELCOME, "ai")]
            return
        rows: list[ChatEntry] = []
        for message in transcript:
            if not message.content:
                continue
            if message.role == "user":
                rows.append(ChatEntry(USER_SENDER, message.content, "user"))
            else:
                rows.append(ChatEntry(self._companion_name, message.content, "ai"))
        self._entries = rows

    def _on_transcript_changed(self, event: TranscriptChanged) -> None:
        self._version += 1
        self._render(event.messages)
        self._notify()

    def _on_activity_changed(self, event: ChatActivityChanged) -> None:
        self._pending = event.pending
        self._notify()


__all__ = ["ChatEntry", "ChatSurface", "PresenceChannel"]
