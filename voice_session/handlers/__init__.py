"""
Handlers module for what the live session receives.

Key components:
- tool_dispatcher: Registry routing remote function calls to handlers and
  formatting exactly one text result per invocation.
- builtin_tools: Session control (stop listening, end session), the clock and
  standing user rules, registered on every session.
- transcript: Assembles transcription deltas into conversation turns and merges
  late citations.
- confirmation: Single-slot yes/no gate that follows a spoken reminder.

Usage examples:
```python
from voice_session.handlers.tool_dispatcher import ToolDispatcher
from voice_session.models.envelopes import ToolCallEnvelope

dispatcher = ToolDispatcher()

@dispatcher.tool("addNote")
async def add_note(args):
    return f"Note added: {args['text']}"

result = await dispatcher.execute(ToolCallEnvelope(id="call-1", name="addNote", args={"text": "milk"}))
```
"""

# Handlers module initialization
