"""Detects "paragraph committed" signals from raw editor change events."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..editor.document_model import EditorState

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EditSnapshot:
    """Last-observed document length and cursor line."""

    text_length: int
    cursor_line: int

    @classmethod
    def from_state(cls, state: EditorState) -> EditSnapshot:
        return cls(text_length=state.length, cursor_line=state.cursor_line)


def is_paragraph_commit(previous: EditSnapshot, current: EditSnapshot) -> bool:
    """Return True when the cursor moved down a line and the text grew.

    This approximates the user pressing Enter. Deletions, cursor-only moves and
    in-place pastes are rejected. A multi-line paste that grows the text and
    advances the cursor is indistinguishable from Enter and also counts.
    """

    return (
        current.cursor_line > previous.cursor_line
        and current.text_length > previous.text_length
    )


class EditSignalDetector:
    """Tracks the editor snapshot and classifies each change."""

    def __init__(self) -> None:
        self._snapshot: EditSnapshot | None = None

    @property
    def snapshot(self) -> EditSnapshot | None:
        return self._snapshot

    @property
    def seeded(self) -> bool:
        return self._snapshot is not None

    def seed(self, state: EditorState) -> None:
        """Initialize the snapshot from the document open at startup."""

        self._snapshot = EditSnapshot.from_state(state)
        LOGGER.debug(
            "Edit snapshot seeded (length=%s, line=%s)",
            self._snapshot.text_length,
            self._snapshot.cursor_line,
        )

    def reset(self) -> None:
        self._snapshot = None

    def observe(self, state: EditorState) -> bool:
        """Record ``state`` and report whether it committed a paragraph.

        The snapshot is replaced on every call, whether or not the signal
        fires. Without a prior snapshot the call only seeds and never fires.
        """

        current = EditSnapshot.from_state(state)
        previous = self._snapshot
        self._snapshot = current
        if previous is None:
            return False
        return is_paragraph_commit(previous, current)


__all__ = ["EditSignalDetector", "EditSnapshot", "is_paragraph_commit"]
