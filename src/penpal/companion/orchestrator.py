"""Top-level companion façade tying editor signals, presence and chat together."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Callable

from openai import OpenAIError

from ..ai.client import AIClient, ClientSettings, GenerationResult, first_part_text
from ..chat.message_model import Transcript
from ..editor.document_model import EditorState
from ..services.settings import Settings, normalize_settings, redact_secret
from ..ui.events import (
    ChatActivityChanged,
    EventBus,
    PresenceChanged,
    SettingsChanged,
    TranscriptChanged,
)
from . import prompts
from .edit_signal import EditSignalDetector
from .session import ConversationSession, SessionConfig
from .trigger_gate import GateDecision, PresencePhase, RandomSource, TriggerGate

LOGGER = logging.getLogger(__name__)

ONE_SHOT_TEMPERATURE = 0.9
ONE_SHOT_MAX_OUTPUT_TOKENS = 1024

ClientFactory = Callable[[Settings], AIClient]


@dataclass(frozen=True, slots=True)
class CompanionTimings:
    """Delays driving the ambient commentary state machine, in seconds."""

    comment_delay: float = 0.1
    display_duration: float = 5.0


@dataclass(frozen=True, slots=True)
class PresenceState:
    text: str
    phase: PresencePhase = PresencePhase.IDLE


def build_client(settings: Settings) -> AIClient:
    """Default client factory: an :class:`AIClient` for the configured endpoint."""

    return AIClient(
        ClientSettings(
            base_url=settings.base_url,
            api_key=settings.api_key.strip(),
            model=settings.model,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            debug_logging=settings.debug_logging,
        )
    )


def extract_response_text(result: GenerationResult) -> str:
    """Pull display text out of a one-shot response.

    Prefers the convenience ``text`` field, then the first candidate's first
    part. An empty but successful response becomes a diagnostic line carrying
    the finish reason instead of an error.
    """

    text = (result.text or "").strip()
    if not text:
        text = first_part_text(result).strip()
    if text:
        return text
    reason = None
    if result.candidates:
        reason = result.candidates[0].finish_reason
    reason = reason or prompts.UNKNOWN_FINISH_REASON
    LOGGER.error("Model returned empty text (finish reason: %s); response: %r", reason, result)
    return prompts.empty_response_message(reason)


def _client_key(settings: Settings) -> tuple:
    return (
        settings.api_key.strip(),
        settings.base_url,
        settings.model,
        settings.request_timeout,
        settings.max_retries,
    )


class CompanionOrchestrator:
    """Routes ambient signals and chat requests to the model and owns presence.

    Ambient greetings and comments use historyless one-shot calls; interactive
    chat goes through the single :class:`ConversationSession`. Every remote
    boundary turns failures into strings, so callers never see transport
    exceptions.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        bus: EventBus | None = None,
        client_factory: ClientFactory = build_client,
        random_source: RandomSource | None = None,
        timings: CompanionTimings | None = None,
    ) -> None:
        self._settings = normalize_settings(settings)
        self._bus = bus or EventBus()
        self._client_factory = client_factory
        self._timings = timings or CompanionTimings()
        self._detector = EditSignalDetector()
        self._gate = TriggerGate(random_source=random_source)
        self._client: AIClient | None = None
        self._session: ConversationSession | None = None
        self._presence = PresenceState(prompts.idle_marker(self._settings.companion_name))
        self._chat_lock = asyncio.Lock()
        self._ambient_tasks: set[asyncio.Task] = set()
        self._closing_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def presence(self) -> PresenceState:
        return self._presence

    @property
    def configured(self) -> bool:
        return self._settings.has_credential

    @property
    def transcript(self) -> Transcript:
        session = self._session
        return session.transcript if session is not None else ()

    @property
    def detector(self) -> EditSignalDetector:
        return self._detector

    # ------------------------------------------------------------------
    # Host hooks
    # ------------------------------------------------------------------
    async def on_layout_ready(self, state: EditorState | None = None) -> None:
        """Seed the edit snapshot and, when enabled, greet the user."""

        if state is not None:
            self._detector.seed(state)
        if not self._settings.greeting_enabled:
            return
        if self._ensure_client() is None:
            self.update_presence(prompts.missing_key_line(self._settings.companion_name))
            return
        await self.greet()

    def handle_editor_change(self, state: EditorState) -> GateDecision:
        """Classify an editor change and schedule a comment when admitted."""

        signal = self._detector.observe(state)
        decision = self._gate.evaluate(
            signal,
            probability=self._settings.comment_probability,
            # Only build a client once an edit actually qualifies.
            configured=signal and self._ensure_client() is not None,
            phase=self._presence.phase,
            text=state.text,
            cursor_line=state.cursor_line,
        )
        if not decision.admitted:
            if signal:
                LOGGER.debug("Ambient trigger rejected: %s", decision.reason)
            return decision

        loop = asyncio.get_running_loop()
        # Hold the guard through the debounce delay so a second Enter is dropped.
        self._presence = PresenceState(self._presence.text, PresencePhase.THINKING)
        task = loop.create_task(self._run_ambient_comment(decision.context))
        self._ambient_tasks.add(task)
        task.add_done_callback(self._ambient_tasks.discard)
        return decision

    def apply_settings(self, settings: Settings) -> bool:
        """Adopt new settings; returns True when the chat session was discarded."""

        previous = self._settings
        updated = normalize_settings(settings)
        self._settings = updated
        client_changed = _client_key(previous) != _client_key(updated)
        reset = client_changed or previous.companion_name != updated.companion_name
        if client_changed:
            LOGGER.info("Companion connection settings changed; discarding client and chat session")
            self._discard_client()
        elif reset:
            LOGGER.info("Companion renamed; starting a new chat session")
            self._session = None
        if reset:
            self._bus.publish(TranscriptChanged(messages=(), reset=True))
        if updated.companion_name != previous.companion_name and not self._presence.phase.busy:
            self.update_presence(prompts.idle_marker(updated.companion_name))
        payload = asdict(updated)
        payload["api_key"] = redact_secret(updated.api_key)
        self._bus.publish(SettingsChanged(settings=payload, session_reset=reset))
        return reset

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------
    async def request_greeting(self) -> str:
        return await self._one_shot(prompts.GREETING_PROMPT, apology=prompts.GREETING_APOLOGY)

    async def request_comment(self, context: str = "") -> str:
        return await self._one_shot(
            prompts.comment_prompt(context.strip()), apology=prompts.COMMENT_APOLOGY
        )

    async def greet(self) -> str | None:
        """Show a greeting on the presence line when greetings are enabled."""

        if not self._settings.greeting_enabled or not self.configured:
            return None
        greeting = await self.request_greeting()
        self.update_presence(prompts.greeting_line(self._settings.companion_name, greeting))
        return greeting

    async def send_interactive(self, message: str) -> str:
        """Send a chat message through the persistent session.

        Concurrent sends are serialized so each one sees the transcript left
        by the previous reply.
        """

        text = (message or "").strip()
        if not text:
            return ""
        if self._ensure_session() is None:
            return prompts.CHAT_NOT_CONFIGURED_MESSAGE

        async with self._chat_lock:
            session = self._ensure_session()
            if session is None:
                return prompts.CHAT_NOT_CONFIGURED_MESSAGE
            before = session.transcript
            self._bus.publish(ChatActivityChanged(pending=True))
            try:
                reply = await session.send(text)
            except Exception:
                LOGGER.warning("Interactive send failed", exc_info=True)
                reply = prompts.SESSION_APOLOGY
            finally:
                self._bus.publish(ChatActivityChanged(pending=False))
            # Failed sends leave the transcript as it was; nothing to republish.
            if session is self._session and session.transcript is not before:
                self._bus.publish(TranscriptChanged(messages=session.transcript))
        return reply

    def update_presence(self, text: str, phase: PresencePhase | None = None) -> None:
        """Overwrite the presence line, optionally moving the ambient phase."""

        next_phase = self._presence.phase if phase is None else phase
        self._presence = PresenceState(text, next_phase)
        self._bus.publish(PresenceChanged(text=text, phase=next_phase))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def wait_idle(self) -> None:
        """Wait until every admitted ambient comment has finished."""

        while self._ambient_tasks:
            await asyncio.gather(*list(self._ambient_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.wait_idle()
        if self._closing_tasks:
            await asyncio.gather(*list(self._closing_tasks), return_exceptions=True)
        client = self._client
        self._client = None
        self._session = None
        if client is not None:
            await client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _run_ambient_comment(self, context: str) -> None:
        try:
            await asyncio.sleep(self._timings.comment_delay)
            self.update_presence(
                prompts.thinking_marker(self._settings.companion_name), PresencePhase.THINKING
            )
            comment = await self.request_comment(context)
            self.update_presence(
                prompts.comment_line(self._settings.companion_name, comment),
                PresencePhase.SHOWING_RESULT,
            )
            await asyncio.sleep(self._timings.display_duration)
        finally:
            self.update_presence(
                prompts.idle_marker(self._settings.companion_name), PresencePhase.IDLE
            )

    async def _one_shot(self, prompt: str, *, apology: str) -> str:
        client = self._ensure_client()
        if client is None:
            return prompts.NOT_CONFIGURED_MESSAGE
        try:
            result = await client.generate(
                prompt,
                system_instruction=prompts.system_instruction(self._settings.companion_name),
                temperature=ONE_SHOT_TEMPERATURE,
                max_output_tokens=ONE_SHOT_MAX_OUTPUT_TOKENS,
            )
        except Exception:
            LOGGER.warning("One-shot completion failed", exc_info=True)
            return apology
        return extract_response_text(result)

    def _ensure_client(self) -> AIClient | None:
        if not self.configured:
            return None
        if self._client is None:
            try:
                self._client = self._client_factory(self._settings)
            except (ValueError, OpenAIError) as exc:
                LOGGER.error("Unable to build AI client: %s", exc)
                return None
        return self._client

    def _ensure_session(self) -> ConversationSession | None:
        client = self._ensure_client()
        if client is None:
            return None
        if self._session is None:
            self._session = ConversationSession(
                client, SessionConfig.for_companion(self._settings.companion_name)
            )
        return self._session

    def _discard_client(self) -> None:
        client = self._client
        self._client = None
        self._session = None
        if client is None:
            return
        close_coro = client.aclose()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(close_coro)
            return
        task = loop.create_task(close_coro)
        self._closing_tasks.add(task)
        task.add_done_callback(self._closing_tasks.discard)


__all__ = [
    "CompanionOrchestrator",
    "CompanionTimings",
    "PresenceState",
    "build_client",
    "extract_response_text",
]
