"""
Persistence collaborator interface for conversations and standing user rules.

The session controller reads the standing rules and today's latest conversation
before every (re)connect and appends turns as they close. Storage itself lives
outside this package; ``InMemoryConversationStore`` is the reference
implementation used in tests and when the service runs without storage.
"""

import asyncio
import itertools
from typing import Dict, List, Optional, Protocol

from voice_session.models.transcript import ConversationLog, TranscriptTurn, UserRule


class ConversationStore(Protocol):
    async def get_user_rules(self) -> List[UserRule]: ...

    async def add_user_rule(self, text: str) -> UserRule: ...

    async def delete_user_rule(self, rule_id: int) -> bool: ...

    async def get_latest_conversation(self, day: str) -> Optional[ConversationLog]: ...

    async def append_turns(self, log_id: Optional[int], day: str, turns: List[TranscriptTurn]) -> int: ...


class InMemoryConversationStore:
    """Conversation store kept in process memory."""

    def __init__(self):
        self._rules: Dict[int, UserRule] = {}
        self._logs: Dict[int, ConversationLog] = {}
        self._rule_ids = itertools.count(1)
        self._log_ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def get_user_rules(self) -> List[UserRule]:
        return sorted(self._rules.values(), key=lambda rule: (rule.created_at, rule.id))

    async def add_user_rule(self, text: str) -> UserRule:
        async with self._lock:
            rule = UserRule(id=next(self._rule_ids), text=text)
            self._rules[rule.id] = rule
            return rule

    async def delete_user_rule(self, rule_id: int) -> bool:
        async with self._lock:
            return self._rules.pop(rule_id, None) is not None

    async def get_latest_conversation(self, day: str) -> Optional[ConversationLog]:
        logs = [log for log in self._logs.values() if log.day == day]
        if not logs:
            return None
        latest = max(logs, key=lambda log: log.id)
        return latest.model_copy(deep=True)

    async def append_turns(self, log_id: Optional[int], day: str, turns: List[TranscriptTurn]) -> int:
        """Append turns to a log, creating a new log for the day when log_id is None."""
        async with self._lock:
            log = self._logs.get(log_id) if log_id is not None else None
            if log is None:
                log = ConversationLog(id=next(self._log_ids), day=day)
                self._logs[log.id] = log
            existing = {turn.id: index for index, turn in enumerate(log.turns)}
            for turn in turns:
                copy = turn.model_copy(deep=True)
                if turn.id in existing:
                    log.turns[existing[turn.id]] = copy
                else:
                    log.turns.append(copy)
            return log.id
