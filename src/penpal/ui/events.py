"""Event bus used to push companion state out to view models.

The orchestrator publishes presence and transcript updates here; views such
as :class:`~penpal.companion.views.PresenceChannel` subscribe without the
orchestrator knowing how (or whether) anything is rendered.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, TYPE_CHECKING
from weakref import WeakMethod

from ..chat.message_model import Transcript
from ..companion.trigger_gate import PresencePhase

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all companion events."""

    pass


@dataclass(slots=True)
class PresenceChanged(Event):
    """Emitted whenever the presence line is overwritten.

    Attributes:
        text: The human-readable status line.
        phase: Ambient commentary phase at the time of the update.
    """

    text: str
    phase: PresencePhase


@dataclass(slots=True)
class TranscriptChanged(Event):
    """Emitted when the chat transcript is replaced (send or reset).

    Attributes:
        messages: Snapshot of the full transcript.
        reset: True when the session was discarded rather than extended.
    """

    messages: Transcript
    reset: bool = False


@dataclass(slots=True)
class ChatActivityChanged(Event):
    """Emitted when an interactive send starts or finishes.

    Attributes:
        pending: Whether a chat reply is outstanding.
    """

    pending: bool


@dataclass(slots=True)
class SettingsChanged(Event):
    """Emitted after new settings have been applied.

    Attributes:
        settings: Mapping of the applied settings with the credential redacted.
        session_reset: Whether the change discarded the chat session.
    """

    settings: dict[str, Any]
    session_reset: bool = False


# Presence is republished on every ambient phase change; skip per-publish logs.
_QUIET_EVENT_TYPES: set[type] = {PresenceChanged}


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus.

    Handlers that are bound methods are held weakly so that a discarded view
    model unsubscribes itself when it is garbage collected.

    Thread Safety:
        Not thread-safe. All calls happen on the event loop thread.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for events of exactly ``event_type``."""
        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                return

    def publish(self, event: E) -> None:
        """Invoke every handler for ``event`` in registration order.

        A handler that raises is logged and skipped; the remaining handlers
        still run.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        if not handlers:
            return
        if event_type not in _QUIET_EVENT_TYPES:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead_indices: list[int] = []
        for i, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(i)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for i in reversed(dead_indices):
            handlers.pop(i)

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for everything else."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: Any, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref
        return self._ref()

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "PresenceChanged",
    "TranscriptChanged",
    "ChatActivityChanged",
    "SettingsChanged",
]
