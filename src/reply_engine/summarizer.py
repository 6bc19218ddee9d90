"""Counter-driven memory snapshots."""
from __future__ import annotations

import logging
import re
import threading
from typing import Callable, Dict, List, Optional, Sequence

from .events import SNAPSHOT_CREATED, EventBus
from .log import MessageLog
from .models import Kind, MemorySnapshot, Message, Sender, SummarySettings, new_id
from .scheduling import Clock, system_clock
from .storage import SUMMARY_SETTINGS_KEY, snapshots_key

logger = logging.getLogger(__name__)

ELLIPSIS = "…"
TITLE_CHARS = 8


def compact(messages: Sequence[Message], max_chars: int = 400) -> str:
    """Role-aware compaction with bounded size and whitespace cleanup."""
    lines: List[str] = []
    for m in messages:
        if m.sender is Sender.SYSTEM:
            continue
        who = "user" if m.sender is Sender.USER else "me"
        if m.kind is Kind.EMOJI:
            lines.append(f"{who}: [{m.emoji_key}]")
            continue
        text = re.sub(r"\s+", " ", m.text).strip()
        if not text:
            continue
        if m.kind is Kind.VOICE:
            text = f"(voice) {text}"
        lines.append(f"{who}: {text}")

    joined = "\n".join(lines).strip()
    if len(joined) > max_chars:
        joined = joined[: max(0, max_chars - len(ELLIPSIS))].rstrip() + ELLIPSIS
    return joined


def make_title(messages: Sequence[Message]) -> str:
    for m in reversed(messages):
        if m.sender is Sender.CHARACTER and m.kind is Kind.TEXT and m.text.strip():
            t = re.sub(r"\s+", " ", m.text.strip())
            return t if len(t) <= TITLE_CHARS else t[:TITLE_CHARS] + ELLIPSIS
    return "Memory"


class MemorySummarizer:
    """Every ``interval`` completed turns, fold the log tail into a snapshot.

    Snapshots per conversation are a FIFO list capped at ``max_snapshots``.
    """

    def __init__(
        self,
        store,
        log: MessageLog,
        *,
        clock: Clock = system_clock,
        max_snapshots: int = 20,
        source_messages: int = 20,
        max_chars: int = 400,
        default_settings: Optional[SummarySettings] = None,
        bus: Optional[EventBus] = None,
        id_factory: Callable[[], str] = lambda: new_id("mem"),
    ) -> None:
        self.store = store
        self.log = log
        self.clock = clock
        self.max_snapshots = max_snapshots
        self.source_messages = source_messages
        self.max_chars = max_chars
        self.bus = bus
        self.id_factory = id_factory
        self._default_settings = default_settings or SummarySettings()
        self._settings: Optional[SummarySettings] = None
        self._snapshots: Dict[str, List[MemorySnapshot]] = {}
        self._lock = threading.RLock()

    # --------- settings ----------
    @property
    def settings(self) -> SummarySettings:
        if self._settings is None:
            raw = self.store.get(SUMMARY_SETTINGS_KEY)
            self._settings = SummarySettings.from_dict(raw) if raw else SummarySettings(
                enabled=self._default_settings.enabled, interval=self._default_settings.interval
            )
        return self._settings

    def update_settings(self, *, enabled: Optional[bool] = None, interval: Optional[int] = None) -> SummarySettings:
        cur = self.settings
        self._settings = SummarySettings(
            enabled=cur.enabled if enabled is None else bool(enabled),
            interval=cur.interval if interval is None else int(interval),
        )
        self.store.set(SUMMARY_SETTINGS_KEY, self._settings.to_dict())
        return self._settings

    # --------- snapshots ----------
    def snapshots(self, conversation_id: str) -> List[MemorySnapshot]:
        with self._lock:
            if conversation_id not in self._snapshots:
                raw = self.store.get(snapshots_key(conversation_id), []) or []
                items: List[MemorySnapshot] = []
                for d in raw:
                    try:
                        items.append(MemorySnapshot.from_dict(d))
                    except (KeyError, TypeError, ValueError) as e:
                        logger.warning("Skipping malformed snapshot in %s: %s", conversation_id, e)
                self._snapshots[conversation_id] = items
            return list(self._snapshots[conversation_id])

    def latest(self, conversation_id: str, k: int = 2) -> List[MemorySnapshot]:
        return self.snapshots(conversation_id)[-k:] if k > 0 else []

    # --------- triggers ----------
    def is_due(self, turn: int) -> bool:
        s = self.settings
        return s.enabled and turn > 0 and turn % s.interval == 0

    def on_turn_completed(self, conversation_id: str, turn: int) -> Optional[MemorySnapshot]:
        if not self.is_due(turn):
            return None
        return self.summarize(conversation_id, turn=turn)

    def summarize_manual(self, conversation_id: str, turn: int) -> Optional[MemorySnapshot]:
        """User-requested snapshot; refused when no reply arrived since the last one."""
        if turn <= 0 or not self._has_new_reply(conversation_id):
            logger.info("No new dialogue in %s since the last snapshot", conversation_id)
            return None
        return self.summarize(conversation_id, turn=turn)

    def _has_new_reply(self, conversation_id: str) -> bool:
        messages = self.log.messages(conversation_id)
        last_reply = max((i for i, m in enumerate(messages) if m.sender is Sender.CHARACTER), default=-1)
        if last_reply < 0:
            return False
        existing = self.snapshots(conversation_id)
        if not existing:
            return True
        # A cleared history no longer holds the covered message, so all of it is new.
        covered = next((i for i, m in enumerate(messages) if m.id == existing[-1].through_id), -1)
        return last_reply > covered

    def summarize(self, conversation_id: str, *, turn: int = 0) -> Optional[MemorySnapshot]:
        source = self.log.tail(conversation_id, self.source_messages)
        text = compact(source, self.max_chars)
        if not text:
            return None
        snap = MemorySnapshot(
            id=self.id_factory(),
            conversation_id=conversation_id,
            title=make_title(source),
            summary_text=text,
            created_at=self.clock(),
            turn=turn,
            through_id=source[-1].id,
        )
        with self._lock:
            items = self.snapshots(conversation_id) + [snap]
            items = items[-self.max_snapshots:]
            self._snapshots[conversation_id] = items
            self.store.set(snapshots_key(conversation_id), [s.to_dict() for s in items])
        logger.info("Memory snapshot %s for %s at turn %d", snap.id, conversation_id, turn)
        if self.bus is not None:
            self.bus.publish(SNAPSHOT_CREATED, conversation_id, snap.to_dict())
        return snap
