"""Turn parsed segments into emittable message drafts.

Three realism rules live here:
  - emoji throttling against the character's recent messages,
  - voice duration from transcript length (3 chars per second),
  - re-splitting of mid-length text into short bubbles.
"""

from __future__ import annotations

import logging
import math
import random
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .models import Kind, Message, Sender
from .protocol import EmojiSegment, Segment, TextSegment, VoiceSegment

logger = logging.getLogger(__name__)

KEEP_MAX = 40
CHUNK = 32
LOOKBACK = 12
ESSAY_MIN = 200
CHARS_PER_SECOND = 3
PUNCTUATION = set("。！？，、；：….!?,;:~～")

_EMOJI_GLYPHS = re.compile(
    "["
    "\U0001F000-\U0001FAFF"
    "\U0001F1E6-\U0001F1FF"
    "\u2600-\u27BF"
    "\u2B00-\u2BFF"
    "\uFE0F\u200D\u20E3"
    "]+"
)


# -----------------------------
# Helpers
# -----------------------------
def strip_emoji(text: str) -> str:
    return re.sub(r"\s{2,}", " ", _EMOJI_GLYPHS.sub("", text)).strip()


def voice_duration(transcript: str) -> int:
    """Whole seconds at three characters per second, never below one."""
    return max(1, math.ceil(len(transcript) / CHARS_PER_SECOND))


def resplit_text(
    text: str,
    *,
    keep_max: int = KEEP_MAX,
    chunk: int = CHUNK,
    lookback: int = LOOKBACK,
    essay_min: int = ESSAY_MIN,
) -> List[str]:
    """Break a text bubble into shorter ones at punctuation.

    Short texts (<= keep_max) and essays (>= essay_min) come back whole.
    Otherwise cut after the last punctuation mark inside the lookback window
    that ends at ``chunk``; when there is none, the rest stays in one piece.
    """
    text = text.strip()
    if len(text) <= keep_max or len(text) >= essay_min:
        return [text]

    out: List[str] = []
    rest = text
    while len(rest) > keep_max:
        cut = 0
        lo = max(1, chunk - lookback)
        for i in range(min(chunk, len(rest)) - 1, lo - 1, -1):
            if rest[i] in PUNCTUATION:
                cut = i + 1
                break
        if not cut:
            break
        piece = rest[:cut].strip()
        if piece:
            out.append(piece)
        rest = rest[cut:].strip()
    if rest:
        out.append(rest)
    return out


# -----------------------------
# Emoji
# -----------------------------
class EmojiCatalog:
    """Externally owned emoji set: key -> glyph or image reference."""

    def __init__(self, entries: Optional[Mapping[str, str]] = None) -> None:
        self._entries: Dict[str, str] = {}
        self._by_lower: Dict[str, str] = {}
        for k, v in (entries or {}).items():
            self._entries[str(k)] = str(v)
            self._by_lower[str(k).lower()] = str(k)

    def resolve(self, key: str) -> Optional[str]:
        """Return the canonical key, or ``None`` if the catalog lacks it."""
        return self._by_lower.get(key.strip().lower())

    def value(self, key: str) -> Optional[str]:
        canon = self.resolve(key)
        return self._entries[canon] if canon else None

    def keys(self) -> List[str]:
        return sorted(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class EmojiThrottle:
    """Accept an emoji with a probability that falls as recent use rises."""

    def __init__(
        self,
        *,
        window: int = 6,
        accept_when_none: float = 0.7,
        accept_when_one: float = 0.35,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.window = window
        self.accept_when_none = accept_when_none
        self.accept_when_one = accept_when_one
        self.rng = rng or random.Random()

    def recent_count(self, history: Sequence[Message]) -> int:
        recent = [m for m in history if m.sender is Sender.CHARACTER][-self.window:]
        return sum(1 for m in recent if m.kind is Kind.EMOJI)

    def probability(self, recent: int) -> float:
        if recent <= 0:
            return self.accept_when_none
        if recent == 1:
            return self.accept_when_one
        return 0.0

    def accept(self, history: Sequence[Message]) -> bool:
        p = self.probability(self.recent_count(history))
        ok = p > 0 and self.rng.random() < p
        logger.debug("Emoji throttle p=%.2f -> %s", p, "accept" if ok else "reject")
        return ok


# -----------------------------
# Drafts
# -----------------------------
@dataclass(frozen=True)
class Draft:
    """A message without id or timestamp; the player stamps those on emit."""
    kind: Kind
    text: str
    voice_duration: Optional[int] = None
    voice_note: Optional[str] = None
    emoji_key: Optional[str] = None

    def to_message(self, message_id: str, created_at: int) -> Message:
        return Message(
            id=message_id,
            sender=Sender.CHARACTER,
            kind=self.kind,
            text=self.text,
            created_at=created_at,
            voice_duration=self.voice_duration,
            voice_note=self.voice_note,
            emoji_key=self.emoji_key,
        )


class PostProcessor:
    def __init__(self, catalog: Optional[EmojiCatalog] = None, throttle: Optional[EmojiThrottle] = None) -> None:
        self.catalog = catalog or EmojiCatalog()
        self.throttle = throttle or EmojiThrottle()

    def process(self, segments: Iterable[Segment], history: Sequence[Message]) -> List[Draft]:
        """Map segments to drafts given the conversation so far."""
        drafts: List[Draft] = []
        emoji_used = False
        for seg in segments:
            if isinstance(seg, TextSegment):
                drafts.extend(Draft(Kind.TEXT, t) for t in resplit_text(seg.text) if t)
            elif isinstance(seg, VoiceSegment):
                transcript = strip_emoji(seg.transcript)
                if not transcript:
                    logger.info("Dropping voice segment that held only emoji")
                    continue
                note = strip_emoji(seg.note) if seg.note else None
                drafts.append(
                    Draft(Kind.VOICE, transcript, voice_duration=voice_duration(transcript), voice_note=note or None)
                )
            elif isinstance(seg, EmojiSegment):
                canon = self.catalog.resolve(seg.key)
                if canon is None:
                    logger.info("Unknown emoji key %r; sending as text", seg.key)
                    drafts.append(Draft(Kind.TEXT, seg.key))
                    continue
                if emoji_used or not self.throttle.accept(history):
                    continue
                emoji_used = True
                drafts.append(Draft(Kind.EMOJI, f"[{canon}]", emoji_key=canon))
        return drafts
