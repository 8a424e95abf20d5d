"""Editor host models."""

from .document_model import EditorState

__all__ = ["EditorState"]
