"""Pending-turn detection and per-conversation debounce."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .models import Message, Sender
from .scheduling import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

DEBOUNCE_WINDOW_MS = 3 * 60 * 1000


@dataclass(frozen=True)
class PendingTurn:
    """User messages no reply has covered yet, oldest first."""
    texts: Tuple[str, ...]
    message_ids: Tuple[str, ...]
    last_at: int

    def age_ms(self, now: int) -> int:
        return max(0, now - self.last_at)


@dataclass(frozen=True)
class Exchange:
    """The last user run and the character run that answered it."""
    user: Tuple[Message, ...]
    replies: Tuple[Message, ...]


def find_pending(messages: Sequence[Message], answered_through: Optional[str] = None) -> Optional[PendingTurn]:
    """Return the user messages that no reply has covered yet.

    ``answered_through`` is the id of the last user message the latest
    replied turn covered. When it is in the log, every user message after it
    is pending, including ones sent while that turn was generating (they sit
    before its reply bubbles). Otherwise the run after the latest character
    message is pending. System notices never count. Pure function of its
    arguments, so repeated calls on an unchanged log agree.
    """
    start = 0
    marker = None
    if answered_through:
        marker = next((i for i, m in enumerate(messages) if m.id == answered_through), None)
    if marker is not None:
        start = marker + 1
    else:
        for i in range(len(messages) - 1, -1, -1):
            if messages[i].sender is Sender.CHARACTER:
                start = i + 1
                break
    run: List[Message] = [m for m in messages[start:] if m.sender is Sender.USER]
    if not run:
        return None
    return PendingTurn(
        texts=tuple(m.text for m in run),
        message_ids=tuple(m.id for m in run),
        last_at=run[-1].created_at,
    )


def find_last_exchange(messages: Sequence[Message]) -> Optional[Exchange]:
    """Locate the last user run and the contiguous character run after it.

    Returns ``None`` when the log has no user message at all. When the user
    run is still unanswered, ``replies`` is empty.
    """
    i = len(messages) - 1
    replies: List[Message] = []
    while i >= 0 and messages[i].sender is not Sender.USER:
        if messages[i].sender is Sender.CHARACTER:
            replies.append(messages[i])
        i -= 1
    user: List[Message] = []
    while i >= 0 and messages[i].sender is not Sender.CHARACTER:
        if messages[i].sender is Sender.USER:
            user.append(messages[i])
        i -= 1
    if not user:
        return None
    user.reverse()
    replies.reverse()
    return Exchange(user=tuple(user), replies=tuple(replies))


class Debouncer:
    """At most one armed timer per conversation.

    Arming while a timer is already armed is a no-op, so a burst of triggers
    inside the window collapses into one scheduled invocation.
    """

    def __init__(self, scheduler: Scheduler) -> None:
        self.scheduler = scheduler
        self._handles: Dict[str, TimerHandle] = {}

    def arm(self, conversation_id: str, delay: float, callback: Callable[[], None]) -> bool:
        if conversation_id in self._handles:
            logger.debug("Debounce already armed for %s; collapsing trigger", conversation_id)
            return False

        def fire() -> None:
            self._handles.pop(conversation_id, None)
            callback()

        self._handles[conversation_id] = self.scheduler.call_later(delay, fire)
        logger.debug("Armed debounce for %s in %.1fs", conversation_id, delay)
        return True

    def cancel(self, conversation_id: str) -> bool:
        handle = self._handles.pop(conversation_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_armed(self, conversation_id: str) -> bool:
        return conversation_id in self._handles
