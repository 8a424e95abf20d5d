"""Persona, prompt and presence-line text for the companion."""

from __future__ import annotations

from textwrap import dedent

GREETING_PROMPT = "Send an extremely short, friendly greeting for the start of a writing session."
FALLBACK_COMMENT_PROMPT = (
    "Staying in character, send a short, casual remark about what the user is "
    "writing or coding right now."
)

NOT_CONFIGURED_MESSAGE = "Can't reach the AI service. Please check your API key!"
CHAT_NOT_CONFIGURED_MESSAGE = "Can't start chatting. Please check your API key in the settings."
GREETING_APOLOGY = "Looks like I dropped offline for a moment..."
COMMENT_APOLOGY = "The network is a bit shaky, hang on."
SESSION_APOLOGY = "Sorry, my connection hiccuped again. Please try again later."
CHAT_WELCOME = "👋 Hi! I'm your writing companion. Say something to start chatting!"
CHAT_MISSING_KEY_NOTICE = "❌ Please enter an API key in the settings!"
UNKNOWN_FINISH_REASON = "N/A"


def system_instruction(companion_name: str) -> str:
    """Return the persona instruction for a companion called ``companion_name``."""

    return dedent(
        f"""
        You are a companion living inside a text editor, and your name is {companion_name}.
        Play a friendly, playful friend who knows a bit about programming and keeps
        the user company while they write.

        Rules:
        1. Keep replies extremely short and conversational, like a passing remark between friends.
        2. Skip formalities such as "Sure" or "Understood"; just say the remark.
        3. Aim for roughly one short sentence.
        4. One or two emoji are welcome.
        5. You are here for light companionship, not in-depth help.
        """
    ).strip()


def comment_prompt(context: str) -> str:
    """Return the one-shot instruction asking for a remark on ``context``."""

    if not context:
        return FALLBACK_COMMENT_PROMPT
    return (
        "Based on the following document excerpt, send a short, spontaneous remark "
        "or reaction in about one sentence. The excerpt is:\n\n"
        f"---START---\n{context}\n---END---"
    )


def empty_response_message(finish_reason: str) -> str:
    return f"🤔 Thinking failed (Reason: {finish_reason})."


def idle_marker(companion_name: str) -> str:
    return f"{companion_name}: Standing by..."


def thinking_marker(companion_name: str) -> str:
    return f"{companion_name}: Thinking..."


def comment_line(companion_name: str, comment: str) -> str:
    return f"{companion_name} (comment): {comment}"


def greeting_line(companion_name: str, greeting: str) -> str:
    return f"{companion_name}: {greeting}"


def missing_key_line(companion_name: str) -> str:
    return f"{companion_name}: Missing API key! Please check your settings."
