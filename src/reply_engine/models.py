"""Data model shared by every part of the reply engine."""

from __future__ import annotations

import itertools
import os
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Sender(str, Enum):
    USER = "user"
    CHARACTER = "character"
    SYSTEM = "system"


class Kind(str, Enum):
    TEXT = "text"
    VOICE = "voice"
    EMOJI = "emoji"
    NOTICE = "system-notice"


class Phase(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    BUSY_WAIT = "busy_wait"
    NO_REPLY_SHOWN = "no_reply_shown"


# -----------------------------
# Ids
# -----------------------------
_seq = itertools.count()


def new_id(prefix: str = "msg") -> str:
    """Return an id that sorts by creation order within a process."""
    return f"{prefix}-{time.time_ns():x}-{next(_seq):06d}-{os.urandom(2).hex()}"


# -----------------------------
# Message
# -----------------------------
@dataclass(frozen=True)
class Message:
    """
    One emitted conversational unit. Frozen: the log never edits a message.

    Fields:
        id: unique id, ordered by creation.
        sender: who produced it.
        kind: text, voice, emoji reference or system notice.
        text: literal content (voice: transcript; emoji: readable tag).
        created_at: epoch millis, drives debounce and summary cadence.
        voice_duration: whole seconds, only for voice.
        voice_note: parenthetical sound description, only for voice.
        emoji_key: catalog key, only for emoji.
    """
    id: str
    sender: Sender
    kind: Kind
    text: str
    created_at: int
    voice_duration: Optional[int] = None
    voice_note: Optional[str] = None
    emoji_key: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind is Kind.VOICE and not self.voice_duration:
            raise ValueError("voice messages need a duration")
        if self.kind is not Kind.VOICE and (self.voice_duration is not None or self.voice_note is not None):
            raise ValueError("only voice messages carry voice fields")
        if self.kind is Kind.EMOJI and not self.emoji_key:
            raise ValueError("emoji messages need an emoji_key")
        if self.kind is not Kind.EMOJI and self.emoji_key is not None:
            raise ValueError("only emoji messages carry an emoji_key")

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "sender": self.sender.value,
            "kind": self.kind.value,
            "text": self.text,
            "created_at": self.created_at,
        }
        if self.voice_duration is not None:
            d["voice_duration"] = self.voice_duration
        if self.voice_note:
            d["voice_note"] = self.voice_note
        if self.emoji_key is not None:
            d["emoji_key"] = self.emoji_key
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Message":
        return cls(
            id=str(d["id"]),
            sender=Sender(d["sender"]),
            kind=Kind(d.get("kind", Kind.TEXT.value)),
            text=str(d.get("text", "")),
            created_at=int(d.get("created_at", 0)),
            voice_duration=d.get("voice_duration"),
            voice_note=d.get("voice_note"),
            emoji_key=d.get("emoji_key"),
        )

    @property
    def from_character(self) -> bool:
        return self.sender is Sender.CHARACTER

    @property
    def from_user(self) -> bool:
        return self.sender is Sender.USER


# -----------------------------
# Conversation state
# -----------------------------
@dataclass
class ConversationState:
    conversation_id: str
    phase: Phase = Phase.IDLE
    busy_until: Optional[int] = None
    no_reply_reason: Optional[str] = None
    turn_counter: int = 0
    last_error: Optional[str] = None
    # Last user message the latest replied turn covered.
    answered_through: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["phase"] = self.phase.value
        return d


# -----------------------------
# Memory
# -----------------------------
@dataclass(frozen=True)
class MemorySnapshot:
    id: str
    conversation_id: str
    title: str
    summary_text: str
    created_at: int
    turn: int = 0
    # Last message folded into this snapshot.
    through_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MemorySnapshot":
        return cls(
            id=str(d["id"]),
            conversation_id=str(d["conversation_id"]),
            title=str(d.get("title", "")),
            summary_text=str(d.get("summary_text", "")),
            created_at=int(d.get("created_at", 0)),
            turn=int(d.get("turn", 0)),
            through_id=str(d.get("through_id") or ""),
        )


@dataclass
class SummarySettings:
    """Global auto-summary switch and cadence (interval clamped to 1..20)."""
    enabled: bool = True
    interval: int = 3

    def __post_init__(self) -> None:
        self.interval = max(1, min(20, int(self.interval)))

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "interval": self.interval}

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "SummarySettings":
        d = d or {}
        return cls(enabled=bool(d.get("enabled", True)), interval=int(d.get("interval", 3)))


@dataclass
class TurnOutcome:
    """What a resolved turn produced, reported back to callers."""
    conversation_id: str
    kind: str  # "normal" | "busy" | "no_reply" | "nothing_pending" | "skipped"
    messages: list = field(default_factory=list)
    busy_until: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "kind": self.kind,
            "messages": [m.to_dict() for m in self.messages],
            "busy_until": self.busy_until,
            "reason": self.reason,
        }
