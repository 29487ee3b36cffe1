"""
Builds the system instruction sent with every (re)connect.

The instruction is rebuilt from persisted data each time a session is opened,
never from in-memory state, so a session resumed after a failure sees exactly
what was stored.
"""

from typing import List, Sequence

from voice_session.config.constants import ASSISTANT_NAME
from voice_session.models.transcript import TranscriptTurn, TurnKind, UserRule

RULES_HEADER = "--- CRITICAL USER-DEFINED RULES (MUST FOLLOW) ---"
RULES_FOOTER = "--- END OF USER RULES ---"
EMPTY_HISTORY = "No previous conversation history."

PERSONA = f"""You are {ASSISTANT_NAME}, a friendly and helpful AI assistant.
ATTENTION: You may be reconnecting to an ongoing conversation after a network interruption. Re-read the entire chat history provided below to regain context. Upon reconnecting, your first response MUST be a direct and relevant continuation of the last user message in the history.

CRITICAL RULE: Maintain conversation continuity. Silently review the ENTIRE conversation history provided below before answering.
- Keep your responses concise and to the point.
- Do not introduce yourself unless specifically asked.
- Do not announce the actions you are taking. Perform the action and provide the result.
- Avoid using the user's name frequently.
You can control the application using the provided functions. You can search the web for up-to-date information; if you do, you MUST cite your sources.

CRITICAL INSTRUCTION: Transcribe all user audio into Russian text ONLY."""


def format_rules(rules: Sequence[UserRule]) -> str:
    """Rules block, or an empty string when there are no rules."""
    if not rules:
        return ""
    lines = "\n".join(f"- {rule.text}" for rule in rules)
    return f"{RULES_HEADER}\n{lines}\n{RULES_FOOTER}\n\n"


def format_history(turns: Sequence[TranscriptTurn]) -> str:
    """Render the conversation history, skipping error notices."""
    lines: List[str] = []
    for turn in turns:
        if turn.kind == TurnKind.ERROR:
            continue
        line = f"{'User' if turn.author == 'user' else 'Assistant'}: {turn.text}"
        if turn.author == "assistant" and turn.sources:
            cited = "\n".join(
                f"[{index}] {source.title} ({source.uri})" for index, source in enumerate(turn.sources, start=1)
            )
            line += f"\nSources:\n{cited}"
        lines.append(line)
    return "\n\n".join(lines) if lines else EMPTY_HISTORY


def build_system_instruction(rules: Sequence[UserRule], history: Sequence[TranscriptTurn]) -> str:
    """
    Assemble the full system instruction.

    Args:
        rules: Standing user rules, oldest first
        history: Turns of today's latest conversation log

    Returns:
        str: The system instruction text
    """
    return (
        f"{format_rules(rules)}{PERSONA}\n\n"
        "Here is the complete conversation history for your mandatory review:\n"
        "--- CONVERSATION START ---\n"
        f"{format_history(history)}\n"
        "--- CONVERSATION END ---\n"
    )
