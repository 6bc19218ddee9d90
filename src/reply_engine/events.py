"""In-process notifications for views watching a conversation."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, DefaultDict, Dict, List, Optional

logger = logging.getLogger(__name__)

MESSAGES_UPDATED = "messages_updated"
STATE_CHANGED = "state_changed"
SCROLL_TO_BOTTOM = "scroll_to_bottom"
SNAPSHOT_CREATED = "snapshot_created"

Listener = Callable[[str, str, Dict[str, Any]], None]


class EventBus:
    """Publish/subscribe by topic, with a version counter per conversation.

    Observers that cannot receive pushes poll :meth:`version` and reload the
    log only when it changed.
    """

    def __init__(self) -> None:
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)
        self._versions: DefaultDict[str, int] = defaultdict(int)
        self._lock = threading.RLock()

    def subscribe(self, topic: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners[topic].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                try:
                    self._listeners[topic].remove(listener)
                except ValueError:
                    pass

        return unsubscribe

    def publish(self, topic: str, conversation_id: str, payload: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            if topic == MESSAGES_UPDATED:
                self._versions[conversation_id] += 1
            listeners = list(self._listeners[topic])
        for listener in listeners:
            try:
                listener(topic, conversation_id, payload or {})
            except Exception:
                # A broken view must not break playback.
                logger.exception("Listener for %s failed", topic)

    def version(self, conversation_id: str) -> int:
        with self._lock:
            return self._versions[conversation_id]
