"""
Conversation records exchanged with the persistence collaborator.

TranscriptTurn objects are mutated in place while a turn is open and are
handed to the conversation store once a turn boundary closes them.
"""

import time
import uuid
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

Author = Literal["user", "assistant"]


class TurnKind(str, Enum):
    """Kind of entry in the transcript."""
    MESSAGE = "message"
    ERROR = "error"
    FILE = "file"
    ALARM = "alarm"


class Source(BaseModel):
    """A citation attached to an assistant turn."""
    uri: str
    title: str


class FileReference(BaseModel):
    """A stored file mentioned in the conversation."""
    id: int
    name: str
    type: str


def _new_turn_id() -> str:
    return uuid.uuid4().hex


class TranscriptTurn(BaseModel):
    """One contiguous span of speech or text attributed to a single author."""

    id: str = Field(default_factory=_new_turn_id)
    author: Author
    text: str = ""
    sources: List[Source] = Field(default_factory=list)
    kind: TurnKind = TurnKind.MESSAGE
    file_reference: Optional[FileReference] = None
    timestamp: float = Field(default_factory=time.time)

    def merge_sources(self, sources: List[Source]) -> List[Source]:
        """Append citations not already present (by uri). Returns the ones added."""
        known = {source.uri for source in self.sources}
        added = []
        for source in sources:
            if source.uri in known:
                continue
            known.add(source.uri)
            self.sources.append(source)
            added.append(source)
        return added


class UserRule(BaseModel):
    """A standing instruction the user asked the assistant to always follow."""
    id: int
    text: str
    created_at: float = Field(default_factory=time.time)


class ConversationLog(BaseModel):
    """All turns of one conversation on a given day."""
    id: int
    day: str
    turns: List[TranscriptTurn] = Field(default_factory=list)


class PendingConfirmation(BaseModel):
    """A spoken reminder waiting for a yes/no answer."""
    subject_kind: Literal["task", "event"]
    subject_id: int
