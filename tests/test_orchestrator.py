"""Tests for the companion orchestrator."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
from openai import OpenAIError

from penpal.ai.client import Candidate, GenerationResult
from penpal.companion import prompts
from penpal.companion.orchestrator import CompanionOrchestrator, extract_response_text
from penpal.companion.trigger_gate import GateDecision, PresencePhase
from penpal.editor.document_model import EditorState
from penpal.services.settings import Settings
from penpal.ui.events import PresenceChanged, SettingsChanged, TranscriptChanged


def _record_presence(orchestrator: CompanionOrchestrator) -> list[PresenceChanged]:
    events: list[PresenceChanged] = []
    orchestrator.bus.subscribe(PresenceChanged, events.append)
    return events


def _enter(orchestrator: CompanionOrchestrator, text: str = "first line\nsecond line") -> GateDecision:
    orchestrator.detector.seed(EditorState(text, cursor_line=text.count("\n")))
    grown = text + "\nthird line"
    return orchestrator.handle_editor_change(EditorState(grown, cursor_line=grown.count("\n")))


# ----------------------------------------------------------------------
# Response extraction
# ----------------------------------------------------------------------


def test_extraction_prefers_top_level_text() -> None:
    result = GenerationResult(text=" top ", candidates=(Candidate(parts=("part",)),))

    assert extract_response_text(result) == "top"


def test_extraction_falls_back_to_first_candidate_part() -> None:
    result = GenerationResult(text="", candidates=(Candidate(parts=("from part", "second")),))

    assert extract_response_text(result) == "from part"


def test_extraction_reports_finish_reason_when_empty() -> None:
    result = GenerationResult(text="", candidates=(Candidate(parts=(), finish_reason="SAFETY"),))

    message = extract_response_text(result)

    assert "SAFETY" in message


def test_extraction_uses_sentinel_without_candidates() -> None:
    assert prompts.UNKNOWN_FINISH_REASON in extract_response_text(GenerationResult())


# ----------------------------------------------------------------------
# One-shot calls
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_comment_is_historyless_one_shot(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator("chat reply", "nice line")
    await orchestrator.send_interactive("remember this")

    comment = await orchestrator.request_comment("some text")

    assert comment == "nice line"
    messages = recorder.calls[-1]["messages"]
    assert [m["role"] for m in messages] == ["system", "user"]
    assert "---START---\nsome text\n---END---" in messages[1]["content"]
    assert recorder.calls[-1]["temperature"] == pytest.approx(0.9)
    assert recorder.calls[-1]["max_tokens"] == 1024
    assert len(orchestrator.transcript) == 2


@pytest.mark.asyncio
async def test_comment_without_context_uses_generic_prompt(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator("hey")

    await orchestrator.request_comment("   ")

    assert recorder.calls[-1]["messages"][1]["content"] == prompts.FALLBACK_COMMENT_PROMPT


@pytest.mark.asyncio
async def test_transport_errors_become_apologies(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator(RuntimeError("offline"))

    assert await orchestrator.request_greeting() == prompts.GREETING_APOLOGY
    assert await orchestrator.request_comment("text") == prompts.COMMENT_APOLOGY
    assert await orchestrator.send_interactive("hi") == prompts.SESSION_APOLOGY


@pytest.mark.asyncio
async def test_unconfigured_calls_return_advisories(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator(api_key="")

    assert await orchestrator.request_greeting() == prompts.NOT_CONFIGURED_MESSAGE
    assert await orchestrator.request_comment("text") == prompts.NOT_CONFIGURED_MESSAGE
    assert await orchestrator.send_interactive("hello") == prompts.CHAT_NOT_CONFIGURED_MESSAGE
    assert orchestrator.transcript == ()
    assert recorder.transports == []


@pytest.mark.asyncio
async def test_whitespace_only_credential_counts_as_absent(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator(api_key="   ")

    assert orchestrator.configured is False
    assert await orchestrator.send_interactive("hello") == prompts.CHAT_NOT_CONFIGURED_MESSAGE


# ----------------------------------------------------------------------
# Interactive chat
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_interactive_send_extends_transcript_and_publishes(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator("hey you")
    published: list[TranscriptChanged] = []
    orchestrator.bus.subscribe(TranscriptChanged, published.append)

    reply = await orchestrator.send_interactive("  hello  ")

    assert reply == "hey you"
    assert [m.role for m in orchestrator.transcript] == ["user", "companion"]
    assert orchestrator.transcript[0].content == "hello"
    assert published[-1].messages == orchestrator.transcript


@pytest.mark.asyncio
async def test_failed_interactive_send_publishes_nothing(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator(RuntimeError("down"))
    published: list[TranscriptChanged] = []
    orchestrator.bus.subscribe(TranscriptChanged, published.append)

    reply = await orchestrator.send_interactive("hello")

    assert reply == prompts.SESSION_APOLOGY
    assert orchestrator.transcript == ()
    assert published == []


@pytest.mark.asyncio
async def test_blank_interactive_message_is_ignored(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator()

    assert await orchestrator.send_interactive("   ") == ""
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_concurrent_sends_are_serialized(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator("one", "two")

    await asyncio.gather(orchestrator.send_interactive("a"), orchestrator.send_interactive("b"))

    assert len(orchestrator.transcript) == 4
    # The second request already carries the first exchange.
    assert len(recorder.calls[1]["messages"]) == 4


# ----------------------------------------------------------------------
# Ambient commentary state machine
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_admitted_comment_walks_presence_states(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator("ok", comment_probability=1.0, companion_name="Pip")
    events = _record_presence(orchestrator)

    decision = _enter(orchestrator)
    assert decision.admitted is True
    assert orchestrator.presence.phase is PresencePhase.THINKING

    await orchestrator.wait_idle()

    assert [event.phase for event in events] == [
        PresencePhase.THINKING,
        PresencePhase.SHOWING_RESULT,
        PresencePhase.IDLE,
    ]
    assert events[0].text == prompts.thinking_marker("Pip")
    assert "ok" in events[1].text
    assert events[1].text == prompts.comment_line("Pip", "ok")
    assert orchestrator.presence.text == prompts.idle_marker("Pip")
    assert orchestrator.presence.phase is PresencePhase.IDLE


@pytest.mark.asyncio
async def test_second_trigger_is_dropped_while_busy(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator("ok", comment_probability=1.0)

    first = _enter(orchestrator)
    grown = EditorState("first line\nsecond line\nthird line\nfourth", cursor_line=3)
    second = orchestrator.handle_editor_change(grown)
    await orchestrator.wait_idle()

    assert first.admitted is True
    assert second.admitted is False
    assert second.reason == "busy"
    assert len(recorder.calls) == 1


@pytest.mark.asyncio
async def test_failed_comment_shows_apology_then_idles(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator(RuntimeError("down"), comment_probability=1.0)
    events = _record_presence(orchestrator)

    _enter(orchestrator)
    await orchestrator.wait_idle()

    assert prompts.COMMENT_APOLOGY in events[1].text
    assert orchestrator.presence.phase is PresencePhase.IDLE


@pytest.mark.asyncio
async def test_probability_miss_does_not_call_model(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator(comment_probability=0.1, draws=[0.5])

    decision = _enter(orchestrator)
    await orchestrator.wait_idle()

    assert decision.reason == "probability"
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_trigger_rejected_when_client_cannot_be_built(fast_timings) -> None:
    attempts: list[Settings] = []

    def _failing_factory(settings: Settings):
        attempts.append(settings)
        raise OpenAIError("endpoint rejected the configuration")

    orchestrator = CompanionOrchestrator(
        Settings(api_key="sk-test", comment_probability=1.0),
        client_factory=_failing_factory,
        random_source=lambda: 0.0,
        timings=fast_timings,
    )
    presence = _record_presence(orchestrator)

    decision = _enter(orchestrator)
    await orchestrator.wait_idle()

    assert decision.admitted is False
    assert decision.reason == "unconfigured"
    assert attempts
    assert presence == []
    assert orchestrator.presence.phase is PresencePhase.IDLE


@pytest.mark.asyncio
async def test_unseeded_detector_never_fires(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator(comment_probability=1.0)

    decision = orchestrator.handle_editor_change(EditorState("a\nb\nc", cursor_line=2))

    assert decision.admitted is False
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_comments_do_not_touch_chat_transcript(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator("ok", comment_probability=1.0)

    _enter(orchestrator)
    await orchestrator.wait_idle()

    assert orchestrator.transcript == ()


# ----------------------------------------------------------------------
# Layout ready / greeting
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_layout_ready_seeds_and_greets(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator("Hello friend!", companion_name="Pip")

    await orchestrator.on_layout_ready(EditorState("a\nb", cursor_line=1))

    assert orchestrator.detector.seeded is True
    assert orchestrator.presence.text == prompts.greeting_line("Pip", "Hello friend!")
    assert orchestrator.presence.phase is PresencePhase.IDLE


@pytest.mark.asyncio
async def test_layout_ready_without_key_reports_missing_key(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator(api_key="", companion_name="Pip")

    await orchestrator.on_layout_ready(None)

    assert orchestrator.presence.text == prompts.missing_key_line("Pip")
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_greeting_disabled_stays_idle(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator(greeting_enabled=False, companion_name="Pip")

    await orchestrator.on_layout_ready(EditorState("x", 0))

    assert orchestrator.presence.text == prompts.idle_marker("Pip")
    assert recorder.calls == []


# ----------------------------------------------------------------------
# Settings / credential lifecycle
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_credential_change_discards_session(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator("reply")
    await orchestrator.send_interactive("hello")
    resets: list[TranscriptChanged] = []
    orchestrator.bus.subscribe(TranscriptChanged, resets.append)

    reset = orchestrator.apply_settings(replace(orchestrator.settings, api_key="sk-other"))
    await orchestrator.aclose()

    assert reset is True
    assert orchestrator.transcript == ()
    assert resets and resets[-1].reset is True
    assert recorder.transports[0].closed is True


@pytest.mark.asyncio
async def test_cleared_credential_disables_chat(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator("reply")
    await orchestrator.send_interactive("hello")

    orchestrator.apply_settings(replace(orchestrator.settings, api_key=""))

    assert await orchestrator.send_interactive("again") == prompts.CHAT_NOT_CONFIGURED_MESSAGE
    assert orchestrator.transcript == ()
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_rename_starts_new_session_with_new_persona(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator("reply")
    await orchestrator.send_interactive("hello")

    orchestrator.apply_settings(replace(orchestrator.settings, companion_name="Nova"))
    await orchestrator.send_interactive("who are you")

    assert len(orchestrator.transcript) == 2
    assert "Nova" in recorder.calls[-1]["messages"][0]["content"]
    assert orchestrator.presence.text == prompts.idle_marker("Nova")
    assert len(recorder.transports) == 1


@pytest.mark.asyncio
async def test_probability_change_keeps_session(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator("reply")
    await orchestrator.send_interactive("hello")
    published: list[SettingsChanged] = []
    orchestrator.bus.subscribe(SettingsChanged, published.append)

    reset = orchestrator.apply_settings(replace(orchestrator.settings, comment_probability=0.5))

    assert reset is False
    assert len(orchestrator.transcript) == 2
    assert published[-1].settings["api_key"] == "sk***st"


def test_invalid_probability_falls_back_to_default() -> None:
    orchestrator = CompanionOrchestrator(Settings(comment_probability=5.0))

    assert orchestrator.settings.comment_probability == pytest.approx(0.1)
