"""
Tool call envelopes exchanged between the session controller and the dispatcher.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SessionEffect(str, Enum):
    """Side effect a tool result has on the session that delivered it."""
    STOP_LISTENING = "stop_listening"
    END_SESSION = "end_session"


class ToolCallEnvelope(BaseModel):
    """A function call issued by the remote model."""
    id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolResultEnvelope(BaseModel):
    """The single textual reply to a ToolCallEnvelope."""
    id: str
    name: str
    result: str
    effect: Optional[SessionEffect] = None
