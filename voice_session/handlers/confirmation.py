"""
Single-slot yes/no confirmation after a spoken reminder.

Once a reminder has been spoken, the next completed user utterance decides
whether the planner task or calendar event it refers to is marked completed.
The slot is consumed by that utterance whatever it says.
"""

import logging
import re
from enum import Enum
from typing import Awaitable, Callable, Literal, Optional

from voice_session.config.constants import LOGGER_NAME
from voice_session.models.transcript import PendingConfirmation

logger = logging.getLogger(LOGGER_NAME)

AFFIRMATIVE_KEYWORDS = frozenset({
    "да", "ага", "угу", "конечно", "готово", "сделал", "сделала", "сделано",
    "выполнил", "выполнила", "выполнено",
    "yes", "yeah", "yep", "done", "completed", "finished",
})

NEGATIVE_KEYWORDS = frozenset({
    "нет", "не", "ещё", "еще", "позже",
    "no", "not", "nope", "later", "don", "didn", "haven", "hasn",
})

_WORD = re.compile(r"\w+", re.UNICODE)


class ConfirmationOutcome(str, Enum):
    NO_PENDING = "no_pending"
    CONFIRMED = "confirmed"
    UNCHANGED = "unchanged"


def is_affirmative(text: str) -> bool:
    """True when the text has an affirmative keyword and no negative one."""
    words = set(_WORD.findall(text.lower()))
    return bool(words & AFFIRMATIVE_KEYWORDS) and not (words & NEGATIVE_KEYWORDS)


class ConfirmationTracker:
    """Holds at most one PendingConfirmation."""

    def __init__(self, complete_subject: Optional[Callable[[PendingConfirmation], Awaitable[None]]] = None):
        self._complete_subject = complete_subject
        self._pending: Optional[PendingConfirmation] = None
        self._announced: Optional[PendingConfirmation] = None

    @property
    def pending(self) -> Optional[PendingConfirmation]:
        return self._pending

    def arm(self, subject_kind: Literal["task", "event"], subject_id: int) -> PendingConfirmation:
        if self._pending is not None:
            logger.debug(f"Replacing pending confirmation for {self._pending.subject_kind} {self._pending.subject_id}")
        self._pending = PendingConfirmation(subject_kind=subject_kind, subject_id=subject_id)
        return self._pending

    def announce(self, subject_kind: Literal["task", "event"], subject_id: int) -> PendingConfirmation:
        """
        Note a reminder that is being spoken but has not finished yet.

        It becomes the pending confirmation only through ``arm_announced``,
        once the remote voice has completed the reminder turn.
        """
        self._announced = PendingConfirmation(subject_kind=subject_kind, subject_id=subject_id)
        return self._announced

    @property
    def announced(self) -> Optional[PendingConfirmation]:
        return self._announced

    def arm_announced(self) -> Optional[PendingConfirmation]:
        announced, self._announced = self._announced, None
        if announced is None:
            return None
        return self.arm(announced.subject_kind, announced.subject_id)

    def drop_announced(self) -> None:
        self._announced = None

    def clear(self) -> None:
        self._pending = None
        self._announced = None

    async def resolve(self, text: str) -> ConfirmationOutcome:
        """
        Inspect a completed user utterance against the pending confirmation.

        The slot is cleared before anything else happens, so it is consumed
        exactly once even if completing the subject fails.
        """
        pending, self._pending = self._pending, None
        if pending is None:
            return ConfirmationOutcome.NO_PENDING

        if not is_affirmative(text):
            logger.info(f"Confirmation for {pending.subject_kind} {pending.subject_id} not given, leaving it unchanged")
            return ConfirmationOutcome.UNCHANGED

        if self._complete_subject is None:
            logger.warning("Confirmation received but no completion handler is configured")
            return ConfirmationOutcome.UNCHANGED

        try:
            await self._complete_subject(pending)
        except Exception as e:
            logger.error(f"Could not complete {pending.subject_kind} {pending.subject_id}: {e}", exc_info=True)
            return ConfirmationOutcome.UNCHANGED

        logger.info(f"Marked {pending.subject_kind} {pending.subject_id} as completed")
        return ConfirmationOutcome.CONFIRMED
