"""Per-conversation state machine.

    Idle ──begin──> Generating ──normal──> Idle
                         │ ──busy────> BusyWait ──begin──> Generating
                         │ ──no_reply─> NoReplyShown ──begin──> Generating
                         └ ──fail────> Idle

Only the engine drives these transitions; views read :meth:`view`.
"""
from __future__ import annotations

import logging
import math
import threading
from typing import Any, Dict, Optional, Sequence

from .errors import InvalidTransition
from .events import STATE_CHANGED, EventBus
from .models import ConversationState, Message, Phase, Sender
from .storage import turns_key

logger = logging.getLogger(__name__)

_ALLOWED = {
    Phase.IDLE: {Phase.GENERATING},
    Phase.BUSY_WAIT: {Phase.GENERATING},
    Phase.NO_REPLY_SHOWN: {Phase.GENERATING},
    Phase.GENERATING: {Phase.IDLE, Phase.BUSY_WAIT, Phase.NO_REPLY_SHOWN},
}


class StateController:
    def __init__(self, store, bus: Optional[EventBus] = None) -> None:
        self.store = store
        self.bus = bus
        self._states: Dict[str, ConversationState] = {}
        self._lock = threading.RLock()

    # --------- access ----------
    def get(self, conversation_id: str) -> ConversationState:
        with self._lock:
            st = self._states.get(conversation_id)
            if st is None:
                turns = self.store.get(turns_key(conversation_id), 0)
                st = ConversationState(conversation_id=conversation_id, turn_counter=int(turns or 0))
                self._states[conversation_id] = st
            return st

    def is_generating(self, conversation_id: str) -> bool:
        return self.get(conversation_id).phase is Phase.GENERATING

    # --------- transitions ----------
    def begin(self, conversation_id: str) -> ConversationState:
        """Enter Generating; raises if a generation is already in flight."""
        return self._move(conversation_id, Phase.GENERATING)

    def finish_normal(self, conversation_id: str, answered_through: Optional[str] = None) -> int:
        """Back to Idle after a replied turn; returns the new turn counter.

        ``answered_through`` is the last user message id the turn covered.
        """
        with self._lock:
            st = self._move(conversation_id, Phase.IDLE, notify=False)
            st.turn_counter += 1
            if answered_through is not None:
                st.answered_through = answered_through
            self.store.set(turns_key(conversation_id), st.turn_counter)
            turn = st.turn_counter
        self._notify(st)
        return turn

    def finish_busy(self, conversation_id: str, busy_until: int) -> ConversationState:
        with self._lock:
            st = self._move(conversation_id, Phase.BUSY_WAIT, notify=False)
            st.busy_until = busy_until
        self._notify(st)
        return st

    def finish_no_reply(self, conversation_id: str, reason: str) -> ConversationState:
        with self._lock:
            st = self._move(conversation_id, Phase.NO_REPLY_SHOWN, notify=False)
            st.no_reply_reason = reason
        self._notify(st)
        return st

    def fail(self, conversation_id: str, error: str) -> ConversationState:
        with self._lock:
            st = self._move(conversation_id, Phase.IDLE, notify=False)
            st.last_error = error
        self._notify(st)
        return st

    def reset(self, conversation_id: str) -> ConversationState:
        """History cleared: counter back to zero, banners dropped.

        A generation already in flight keeps its Generating phase so the
        single-flight guard still holds until it lands.
        """
        with self._lock:
            st = self.get(conversation_id)
            if st.phase is not Phase.GENERATING:
                st.phase = Phase.IDLE
            st.busy_until = None
            st.no_reply_reason = None
            st.last_error = None
            st.answered_through = None
            st.turn_counter = 0
            self.store.delete(turns_key(conversation_id))
        self._notify(st)
        return st

    # --------- derived views ----------
    def busy_remaining(self, conversation_id: str, now: int) -> int:
        """Seconds until the character is reachable again (0 when not busy)."""
        st = self.get(conversation_id)
        if st.phase is not Phase.BUSY_WAIT or st.busy_until is None:
            return 0
        return max(0, math.ceil((st.busy_until - now) / 1000))

    def banner(self, conversation_id: str, now: int) -> Optional[str]:
        st = self.get(conversation_id)
        if st.phase is Phase.BUSY_WAIT:
            remaining = self.busy_remaining(conversation_id, now)
            if remaining <= 0:
                return "Busy earlier, may be free now"
            return f"Busy, back in about {math.ceil(remaining / 60)} min"
        if st.phase is Phase.NO_REPLY_SHOWN:
            reason = st.no_reply_reason or ""
            return f"Read, no reply ({reason})" if reason else "Read, no reply"
        if st.phase is Phase.GENERATING:
            return "Typing..."
        return None

    def view(self, conversation_id: str, now: int, messages: Sequence[Message] = ()) -> Dict[str, Any]:
        st = self.get(conversation_id)
        generating = st.phase is Phase.GENERATING
        has_reply = any(m.sender is Sender.CHARACTER for m in messages)
        d = st.to_dict()
        d.update(
            busy_remaining_seconds=self.busy_remaining(conversation_id, now),
            banner=self.banner(conversation_id, now),
            input_enabled=not generating,
            can_regenerate=(not generating) and has_reply,
        )
        return d

    # --------- internals ----------
    def _move(self, conversation_id: str, target: Phase, *, notify: bool = True) -> ConversationState:
        with self._lock:
            st = self.get(conversation_id)
            if target not in _ALLOWED[st.phase]:
                raise InvalidTransition(st.phase.value, target.value)
            logger.debug("%s: %s -> %s", conversation_id, st.phase.value, target.value)
            st.phase = target
            if target is Phase.GENERATING:
                st.last_error = None
            else:
                # Leaving Generating clears whatever the previous outcome left behind.
                st.busy_until = None
                st.no_reply_reason = None
        if notify:
            self._notify(st)
        return st

    def _notify(self, st: ConversationState) -> None:
        if self.bus is not None:
            self.bus.publish(STATE_CHANGED, st.conversation_id, st.to_dict())
