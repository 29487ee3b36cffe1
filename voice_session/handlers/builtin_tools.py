"""
Tools every session registers: session control, clock and standing user rules.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict

from voice_session.config.constants import CONTEXT_PREFIX, LOGGER_NAME
from voice_session.errors import ToolExecutionError
from voice_session.handlers.tool_dispatcher import ToolDispatcher
from voice_session.models.envelopes import SessionEffect
from voice_session.services.conversation_store import ConversationStore

logger = logging.getLogger(LOGGER_NAME)

_NO_PARAMETERS = {"type": "OBJECT", "properties": {}}

STOP_CONVERSATION_DECLARATION = {
    "name": "stopConversation",
    "description": (
        "Turns off the microphone and ends the current voice conversation. Use this when the "
        "user asks to stop, be quiet, hang up, or disconnect."
    ),
    "parameters": _NO_PARAMETERS,
}

END_SESSION_DECLARATION = {
    "name": "endSession",
    "description": (
        "Collapses the chat interface and disconnects the microphone. Use this when the user "
        "says goodbye, signs off, or indicates the conversation is over."
    ),
    "parameters": _NO_PARAMETERS,
}

CURRENT_TIME_DECLARATION = {
    "name": "getCurrentTimeAndDate",
    "description": (
        "Gets the current local time and date of the user. Use this when the user asks "
        "\"what time is it?\", \"what is today's date?\", etc."
    ),
    "parameters": _NO_PARAMETERS,
}

SAVE_INSTRUCTION_DECLARATION = {
    "name": "saveUserInstruction",
    "description": (
        "Saves a new permanent instruction or rule from the user that the assistant must follow "
        "in all future interactions. Use for commands like \"Remember that...\", "
        "\"Save this rule...\", \"New instruction:...\"."
    ),
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "text": {"type": "STRING", "description": "The content of the instruction to save."},
        },
        "required": ["text"],
    },
}

GET_INSTRUCTIONS_DECLARATION = {
    "name": "getUserInstructions",
    "description": (
        "Reads and returns all permanent instructions the user has saved. Use for commands like "
        "\"Show my rules\", \"What instructions have I given you?\"."
    ),
    "parameters": _NO_PARAMETERS,
}

DELETE_INSTRUCTION_DECLARATION = {
    "name": "deleteUserInstruction",
    "description": (
        "Finds and deletes a specific user instruction based on its content or index. Ask the "
        "user for clarification if the query is ambiguous."
    ),
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "query": {
                "type": "STRING",
                "description": "The text content or 1-based index of the instruction to delete.",
            },
        },
        "required": ["query"],
    },
}


def register_builtin_tools(
    dispatcher: ToolDispatcher,
    store: ConversationStore,
    clock: Callable[[], datetime] = datetime.now,
) -> None:
    """
    Register the session-level tools on a dispatcher.

    Args:
        dispatcher: Dispatcher to register on
        store: Conversation store holding the standing user rules
        clock: Source of the current local time
    """

    async def stop_conversation(args: Dict[str, Any]) -> str:
        return "Microphone off."

    async def end_session(args: Dict[str, Any]) -> str:
        return "Ending the session."

    async def current_time_and_date(args: Dict[str, Any]) -> str:
        now = clock()
        return f"It is {now.strftime('%H:%M')}, {now.strftime('%A, %d %B %Y')}."

    async def save_user_instruction(args: Dict[str, Any]) -> str:
        text = str(args.get("text") or "").strip()
        if not text:
            raise ToolExecutionError("Could not save the instruction: no text was provided.")
        await store.add_user_rule(text)
        logger.info(f"Saved user rule: {text}")
        return f"Okay, I will remember the rule: \"{text}\""

    async def get_user_instructions(args: Dict[str, Any]) -> str:
        rules = await store.get_user_rules()
        if not rules:
            return f"{CONTEXT_PREFIX} You have no saved instructions for me yet."
        listing = "\n".join(f"{index}. {rule.text}" for index, rule in enumerate(rules, start=1))
        return f"{CONTEXT_PREFIX} Here are the instructions you have given me:\n{listing}"

    async def delete_user_instruction(args: Dict[str, Any]) -> str:
        query = str(args.get("query") or "").strip()
        rules = await store.get_user_rules()
        target = None
        if query.isdigit() and 0 < int(query) <= len(rules):
            target = rules[int(query) - 1]
        elif query:
            lowered = query.lower()
            target = next((rule for rule in rules if lowered in rule.text.lower()), None)
        if target is None:
            return f"Could not find an instruction matching: \"{query}\""
        await store.delete_user_rule(target.id)
        logger.info(f"Deleted user rule {target.id}")
        return f"I deleted the instruction: \"{target.text}\""

    dispatcher.register(
        "stopConversation", stop_conversation, STOP_CONVERSATION_DECLARATION, SessionEffect.STOP_LISTENING
    )
    dispatcher.register("endSession", end_session, END_SESSION_DECLARATION, SessionEffect.END_SESSION)
    dispatcher.register("getCurrentTimeAndDate", current_time_and_date, CURRENT_TIME_DECLARATION)
    dispatcher.register("saveUserInstruction", save_user_instruction, SAVE_INSTRUCTION_DECLARATION)
    dispatcher.register("getUserInstructions", get_user_instructions, GET_INSTRUCTIONS_DECLARATION)
    dispatcher.register("deleteUserInstruction", delete_user_instruction, DELETE_INSTRUCTION_DECLARATION)
