"""Companion core: edit signals, trigger gating, chat session and orchestration."""

from importlib import import_module
from typing import Any

from .edit_signal import EditSignalDetector, EditSnapshot
from .trigger_gate import GateDecision, PresencePhase, TriggerGate

__all__ = [
    "ChatSurface",
    "CompanionOrchestrator",
    "CompanionTimings",
    "ConversationSession",
    "EditSignalDetector",
    "EditSnapshot",
    "GateDecision",
    "PresenceChannel",
    "PresencePhase",
    "TriggerGate",
]

# These pull in the event bus, which itself imports this package.
_LAZY_ATTRS = {
    "ChatSurface": "views",
    "CompanionOrchestrator": "orchestrator",
    "CompanionTimings": "orchestrator",
    "ConversationSession": "session",
    "PresenceChannel": "views",
}


def __getattr__(name: str) -> Any:
    module_name = _LAZY_ATTRS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module = import_module(f"{__name__}.{module_name}")
    value = getattr(module, name)
    globals()[name] = value
    return value
