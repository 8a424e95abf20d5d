"""AI client and chat session wiring."""

from .client import AIClient, Candidate, ChatSession, ClientSettings, GenerationResult

__all__ = ["AIClient", "Candidate", "ChatSession", "ClientSettings", "GenerationResult"]
