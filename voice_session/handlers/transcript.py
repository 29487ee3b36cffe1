"""
Merges incremental transcription deltas into conversation turns.

Two accumulators (local user, remote assistant) collect text fragments. A
fragment extends the author's open turn; a user fragment arriving while the
user accumulator is empty starts a new turn, and a turn-complete signal closes
both open turns and clears both accumulators. Closed turns are never rewritten,
except for late citations merged into the most recent assistant turn.
"""

import logging
from typing import Dict, List, Optional

from voice_session.config.constants import LOGGER_NAME
from voice_session.models.transcript import Author, Source, TranscriptTurn, TurnKind

logger = logging.getLogger(LOGGER_NAME)


class TranscriptAssembler:
    """Owns the in-memory transcript of the current conversation."""

    def __init__(self, turns: Optional[List[TranscriptTurn]] = None):
        self.turns: List[TranscriptTurn] = list(turns or [])
        self._user_text = ""
        self._assistant_text = ""
        self._open: Dict[str, TranscriptTurn] = {}

    def load(self, turns: List[TranscriptTurn]) -> None:
        """Replace the transcript with persisted history, dropping any open turn."""
        self.turns = list(turns)
        self._user_text = ""
        self._assistant_text = ""
        self._open.clear()

    def add_user_delta(self, text: str) -> Optional[TranscriptTurn]:
        if not text:
            return None
        new_turn = self._user_text == ""
        self._user_text += text
        return self._update("user", self._user_text, new_turn)

    def add_assistant_delta(self, text: str) -> Optional[TranscriptTurn]:
        if not text:
            return None
        self._assistant_text += text
        return self._update("assistant", self._assistant_text, new_turn=False)

    def _update(self, author: Author, text: str, new_turn: bool) -> TranscriptTurn:
        turn = self._open.get(author)
        if turn is None or new_turn:
            turn = TranscriptTurn(author=author, text=text)
            self.turns.append(turn)
            self._open[author] = turn
        else:
            turn.text = text
        return turn

    def open_turn(self, author: Author) -> Optional[TranscriptTurn]:
        return self._open.get(author)

    def complete_turn(self) -> List[TranscriptTurn]:
        """
        Close every open turn and clear both accumulators.

        Returns:
            The turns that were closed, in creation order
        """
        closed = [turn for turn in self.turns if any(turn is open_turn for open_turn in self._open.values())]
        self._open.clear()
        self._user_text = ""
        self._assistant_text = ""
        return closed

    def merge_sources(self, sources: List[Source], author: Author = "assistant") -> Optional[TranscriptTurn]:
        """
        Attach citations to the most recent message turn of ``author``.

        Citations may arrive after the turn they annotate has been closed and
        logged; duplicates (same uri) are skipped.

        Returns:
            The turn that gained new citations, or None
        """
        if not sources:
            return None
        for turn in reversed(self.turns):
            if turn.author != author or turn.kind != TurnKind.MESSAGE:
                continue
            added = turn.merge_sources(sources)
            if added:
                logger.debug(f"Merged {len(added)} citation(s) into turn {turn.id}")
                return turn
            return None
        logger.debug("No turn to attach citations to")
        return None

    def add_text_turn(self, author: Author, text: str) -> TranscriptTurn:
        """Append a complete typed turn."""
        turn = TranscriptTurn(author=author, text=text)
        self.turns.append(turn)
        return turn

    def add_notice(self, text: str, kind: TurnKind = TurnKind.ERROR) -> TranscriptTurn:
        """
        Append an advisory turn from the assistant.

        Consecutive error notices replace each other so repeated transient
        failures show up as a single, current status line. The replacement
        keeps the id of the notice it replaces.
        """
        if kind == TurnKind.ERROR and self.turns and self.turns[-1].kind == TurnKind.ERROR:
            notice = TranscriptTurn(id=self.turns[-1].id, author="assistant", text=text, kind=kind)
            self.turns[-1] = notice
        else:
            notice = TranscriptTurn(author="assistant", text=text, kind=kind)
            self.turns.append(notice)
        return notice
