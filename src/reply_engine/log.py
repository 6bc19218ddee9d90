"""Ordered, append-only message log per conversation."""
from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .events import MESSAGES_UPDATED, EventBus
from .models import Message
from .storage import messages_key

logger = logging.getLogger(__name__)


class MessageLog:
    """In-memory log mirrored to a key-value store.

    Messages are frozen; the only ways a sequence changes are :meth:`append`,
    :meth:`remove` (regeneration drops a whole run) and :meth:`clear`. The
    in-memory copy stays authoritative when the store fails to persist.
    """

    def __init__(self, store, bus: Optional[EventBus] = None) -> None:
        self.store = store
        self.bus = bus
        self._cache: Dict[str, Tuple[Message, ...]] = {}
        self._lock = threading.RLock()

    # --------- reads ----------
    def messages(self, conversation_id: str) -> Tuple[Message, ...]:
        with self._lock:
            if conversation_id not in self._cache:
                self._cache[conversation_id] = self._load(conversation_id)
            return self._cache[conversation_id]

    def tail(self, conversation_id: str, k: int) -> Tuple[Message, ...]:
        msgs = self.messages(conversation_id)
        return msgs[-k:] if k > 0 else ()

    # --------- writes ----------
    def append(self, conversation_id: str, message: Message, *, notify: bool = True) -> Message:
        with self._lock:
            current = self.messages(conversation_id)
            if any(m.id == message.id for m in current[-50:]):
                raise ValueError(f"duplicate message id {message.id}")
            self._cache[conversation_id] = current + (message,)
            self._persist(conversation_id)
        if notify and self.bus is not None:
            self.bus.publish(MESSAGES_UPDATED, conversation_id, {"appended": [message.id]})
        return message

    def extend(self, conversation_id: str, messages: Iterable[Message]) -> List[Message]:
        out = [self.append(conversation_id, m, notify=False) for m in messages]
        if out and self.bus is not None:
            self.bus.publish(MESSAGES_UPDATED, conversation_id, {"appended": [m.id for m in out]})
        return out

    def remove(self, conversation_id: str, ids: Sequence[str]) -> int:
        """Drop the given messages from the sequence, returning how many went."""
        doomed = set(ids)
        if not doomed:
            return 0
        with self._lock:
            current = self.messages(conversation_id)
            kept = tuple(m for m in current if m.id not in doomed)
            removed = len(current) - len(kept)
            if removed:
                self._cache[conversation_id] = kept
                self._persist(conversation_id)
        if removed and self.bus is not None:
            self.bus.publish(MESSAGES_UPDATED, conversation_id, {"removed": sorted(doomed)})
        return removed

    def clear(self, conversation_id: str) -> None:
        with self._lock:
            self._cache[conversation_id] = ()
            self.store.delete(messages_key(conversation_id))
        if self.bus is not None:
            self.bus.publish(MESSAGES_UPDATED, conversation_id, {"cleared": True})

    # --------- internals ----------
    def _load(self, conversation_id: str) -> Tuple[Message, ...]:
        raw = self.store.get(messages_key(conversation_id), []) or []
        out: List[Message] = []
        for item in raw:
            try:
                out.append(Message.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed message in %s: %s", conversation_id, e)
        return tuple(out)

    def _persist(self, conversation_id: str) -> None:
        self.store.set(messages_key(conversation_id), [m.to_dict() for m in self._cache[conversation_id]])
