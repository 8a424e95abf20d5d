"""Dataclasses describing what the editing host reports to the companion."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class EditorState:
    """Document text and cursor position at the moment of a host callback."""

    text: str = ""
    cursor_line: int = 0

    @property
    def length(self) -> int:
        return len(self.text)
