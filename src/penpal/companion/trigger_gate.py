"""Admission control for ambient commentary."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable

LOGGER = logging.getLogger(__name__)

CONTEXT_WINDOW_LINES = 5

RandomSource = Callable[[], float]


class PresencePhase(Enum):
    """Where the ambient commentary state machine currently is."""

    IDLE = "idle"
    THINKING = "thinking"
    SHOWING_RESULT = "showing-result"

    @property
    def busy(self) -> bool:
        return self is not PresencePhase.IDLE


@dataclass(frozen=True, slots=True)
class GateDecision:
    admitted: bool
    reason: str
    context: str = ""


def extract_context(text: str, cursor_line: int, window: int = CONTEXT_WINDOW_LINES) -> str:
    """Return up to ``window`` lines ending at ``cursor_line``, stripped."""

    lines = text.split("\n")
    end = max(0, cursor_line)
    start = max(0, end - (window - 1))
    return "\n".join(lines[start : end + 1]).strip()


class TriggerGate:
    """Decides whether a committed paragraph earns an ambient comment.

    Checks run in a fixed order: signal, configured client, one probability
    draw, non-empty context, idle phase. The draw happens before the context
    and phase checks so that a busy companion still consumes randomness.
    """

    def __init__(self, *, random_source: RandomSource | None = None) -> None:
        self._random = random_source or random.random

    def evaluate(
        self,
        signal: bool,
        *,
        probability: float,
        configured: bool,
        phase: PresencePhase,
        text: str,
        cursor_line: int,
    ) -> GateDecision:
        if not signal:
            return GateDecision(False, "no-signal")
        if not configured:
            return GateDecision(False, "unconfigured")
        draw = self._random()
        if not draw < probability:
            return GateDecision(False, "probability")
        context = extract_context(text, cursor_line)
        if not context:
            return GateDecision(False, "empty-context")
        if phase.busy:
            LOGGER.debug("Dropping ambient trigger while presence is %s", phase.value)
            return GateDecision(False, "busy")
        return GateDecision(True, "admitted", context)


__all__ = ["GateDecision", "PresencePhase", "TriggerGate", "extract_context", "CONTEXT_WINDOW_LINES"]
