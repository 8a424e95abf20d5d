"""Tests for the presence and chat view models."""

from __future__ import annotations

import pytest

from penpal.companion import prompts
from penpal.companion.trigger_gate import PresencePhase
from penpal.companion.views import THINKING_TEXT, USER_SENDER, ChatSurface, PresenceChannel
from penpal.editor.document_model import EditorState


@pytest.mark.asyncio
async def test_presence_channel_follows_ambient_cycle(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator("ok", comment_probability=1.0, companion_name="Pip")
    channel = PresenceChannel(orchestrator)
    seen: list[tuple[str, PresencePhase]] = []
    channel.subscribe(lambda: seen.append((channel.text, channel.phase)))

    orchestrator.detector.seed(EditorState("a", 0))
    orchestrator.handle_editor_change(EditorState("a\nb", 1))
    await orchestrator.wait_idle()

    assert seen[1] == (prompts.comment_line("Pip", "ok"), PresencePhase.SHOWING_RESULT)
    assert channel.text == prompts.idle_marker("Pip")
    assert channel.phase is PresencePhase.IDLE


def test_presence_channel_starts_from_current_presence(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator(companion_name="Pip")

    channel = PresenceChannel(orchestrator)

    assert channel.text == prompts.idle_marker("Pip")


def test_unsubscribe_stops_notifications(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator()
    channel = PresenceChannel(orchestrator)
    calls: list[str] = []
    unsubscribe = channel.subscribe(lambda: calls.append(channel.text))

    unsubscribe()
    orchestrator.update_presence("anything")

    assert calls == []
    assert channel.text == "anything"


def test_chat_surface_shows_welcome_when_empty(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator(companion_name="Pip")

    surface = ChatSurface(orchestrator)

    assert [(e.sender, e.text) for e in surface.entries] == [("Pip", prompts.CHAT_WELCOME)]


@pytest.mark.asyncio
async def test_chat_surface_renders_transcript_after_send(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator("hi back", companion_name="Pip")
    surface = ChatSurface(orchestrator)
    snapshots: list[tuple] = []
    surface.subscribe(lambda: snapshots.append(surface.entries))

    reply = await surface.submit("  hi  ")

    assert reply == "hi back"
    assert [(e.sender, e.text, e.kind) for e in surface.entries] == [
        (USER_SENDER, "hi", "user"),
        ("Pip", "hi back", "ai"),
    ]
    assert any(entry.text == THINKING_TEXT and entry.pending for rows in snapshots for entry in rows)
    assert surface.pending is False


@pytest.mark.asyncio
async def test_chat_surface_keeps_failed_exchange_visible(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator(RuntimeError("down"), companion_name="Pip")
    surface = ChatSurface(orchestrator)

    reply = await surface.submit("hello")

    assert reply == prompts.SESSION_APOLOGY
    assert orchestrator.transcript == ()
    assert [(e.kind, e.text) for e in surface.entries][-2:] == [
        ("user", "hello"),
        ("ai", prompts.SESSION_APOLOGY),
    ]


@pytest.mark.asyncio
async def test_chat_surface_without_key_posts_system_notice(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator(api_key="")
    surface = ChatSurface(orchestrator)

    reply = await surface.submit("hello")

    assert reply is None
    assert surface.entries[-1].kind == "system"
    assert surface.entries[-1].text == prompts.CHAT_MISSING_KEY_NOTICE
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_chat_surface_ignores_blank_input(make_orchestrator) -> None:
    orchestrator, recorder = make_orchestrator()
    surface = ChatSurface(orchestrator)

    assert await surface.submit("   ") is None
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_chat_surface_loads_existing_history(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator("earlier reply")
    await orchestrator.send_interactive("earlier")

    surface = ChatSurface(orchestrator)

    assert [e.text for e in surface.entries] == ["earlier", "earlier reply"]
