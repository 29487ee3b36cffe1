"""
Session lifecycle states and the status snapshot reported to the UI.
"""

from enum import Enum

from pydantic import BaseModel


class SessionState(str, Enum):
    """Lifecycle of the live session."""
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    INTERRUPTED = "interrupted"
    RETRYING = "retrying"
    FATAL = "fatal"


class SessionStatus(BaseModel):
    """Eventually consistent view of the session for status displays."""
    state: SessionState = SessionState.IDLE
    message: str = ""
    attempt: int = 0
    cycle: int = 1
    user_speaking: bool = False
    assistant_speaking: bool = False
    manual_retry_required: bool = False

    @property
    def connected(self) -> bool:
        return self.state in (SessionState.STREAMING, SessionState.INTERRUPTED)
