"""
Models module for data structures in the live voice session manager.

Key components:
- live_schemas: Pydantic models for the Gemini Live WebSocket protocol, covering
  setup, realtime audio input, client text turns, tool responses and every
  server message the session reacts to.
- envelopes: Tool call / tool result envelopes passed between the session
  controller and the tool dispatcher.
- transcript: Conversation turns, citations, standing user rules and
  conversation logs shared with the persistence collaborator.
- session: Lifecycle states and the status snapshot exposed to the UI.

Usage examples:
```python
from voice_session.models.live_schemas import LiveServerMessage

message = LiveServerMessage.model_validate_json(raw)
for chunk in message.audio_chunks():
    pcm = chunk.decode()
```
"""

from voice_session.models.envelopes import SessionEffect, ToolCallEnvelope, ToolResultEnvelope
from voice_session.models.session import SessionState, SessionStatus
from voice_session.models.transcript import (
    ConversationLog,
    FileReference,
    PendingConfirmation,
    Source,
    TranscriptTurn,
    TurnKind,
    UserRule,
)
