"""Parse raw model output into exactly one of Busy, NoReply or Normal.

Directive grammar (ASCII and Chinese spellings are equivalent):

    [BUSY:5]              [忙碌:5]          whole output: busy for 5 minutes
    [NO_REPLY:in class]   [不回复:在上课]    whole output: read, no reply
    [EMOJI:hug]           [表情:hug]        emoji bubble
    [VOICE](sigh) fine    [语音]（叹气）好吧   voice bubble with sound note

A Busy / NoReply directive counts only when it is essentially the whole
output (an optional short remark on the same line is tolerated). Anything
else, including a directive followed by real dialogue, is Normal text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

BUSY_REMARK_MAX = 30
NO_REPLY_REASON_MAX = 60
SENTENCE_SPLIT_MIN = 100
ESSAY_MIN = 200

_BUSY = re.compile(r"^\[\s*(?:BUSY|忙碌)\s*[:：]\s*(-?\d+)\s*\](.*)$", re.IGNORECASE | re.DOTALL)
_NO_REPLY = re.compile(r"^\[\s*(?:NO_REPLY|NOREPLY|不回复)\s*(?:[:：]\s*([^\]\n]*))?\](.*)$", re.IGNORECASE | re.DOTALL)
_EMOJI = re.compile(r"\[\s*(?:EMOJI|表情)\s*[:：]\s*([^\]\n]+?)\s*\]", re.IGNORECASE)
_VOICE = re.compile(r"^\[\s*(?:VOICE|语音)\s*\]\s*(.*)$", re.IGNORECASE | re.DOTALL)
_SOUND_NOTE = re.compile(r"^[（(]([^）)]*)[）)]\s*(.*)$", re.DOTALL)
# Sound-description lines count as voice even without the [语音] prefix.
_IMPLICIT_VOICE = re.compile(r"^[（(](?:声音|周围)")
_SENTENCE_END = re.compile(r"(?<=[。！？!?…])(?![。！？!?…”」])|(?<=[。！？!?…][”」])|(?<=\.)(?=\s)")


# -----------------------------
# Tagged union
# -----------------------------
@dataclass(frozen=True)
class TextSegment:
    text: str


@dataclass(frozen=True)
class VoiceSegment:
    transcript: str
    note: Optional[str] = None


@dataclass(frozen=True)
class EmojiSegment:
    key: str


Segment = Union[TextSegment, VoiceSegment, EmojiSegment]


@dataclass(frozen=True)
class Busy:
    minutes: int
    remark: str = ""


@dataclass(frozen=True)
class NoReply:
    reason: str


@dataclass(frozen=True)
class Normal:
    segments: Tuple[Segment, ...]


ParsedReply = Union[Busy, NoReply, Normal]


# -----------------------------
# Parsing
# -----------------------------
def parse_reply(raw: str, *, min_busy_minutes: int = 1, max_busy_minutes: int = 10) -> ParsedReply:
    """Classify ``raw`` into one outcome. Never raises on malformed input."""
    text = (raw or "").strip()

    m = _BUSY.match(text)
    if m:
        remark = m.group(2).strip()
        if _is_short_tail(m.group(2), BUSY_REMARK_MAX):
            minutes = max(min_busy_minutes, min(max_busy_minutes, int(m.group(1))))
            return Busy(minutes=minutes, remark=remark)
        logger.warning("Busy directive mixed with dialogue; treating reply as plain text")

    m = _NO_REPLY.match(text)
    if m:
        inner = (m.group(1) or "").strip()
        tail = m.group(2).strip()
        if _is_short_tail(m.group(2), NO_REPLY_REASON_MAX):
            reason = (inner or tail)[:NO_REPLY_REASON_MAX]
            return NoReply(reason=reason)
        logger.warning("No-reply directive mixed with dialogue; treating reply as plain text")

    return Normal(segments=tuple(_segments(text, raw)))


def _is_short_tail(tail: str, limit: int) -> bool:
    """Same-line remark only; anything on a following line is dialogue."""
    tail = tail.rstrip()
    return "\n" not in tail and len(tail.strip()) <= limit


def _segments(text: str, raw: str) -> List[Segment]:
    lines = [line.strip() for line in re.split(r"\n+", text) if line.strip()]
    out: List[Segment] = []
    for line in lines:
        out.extend(_classify_line(line))

    if len(out) == 1 and isinstance(out[0], TextSegment):
        only = out[0].text
        if SENTENCE_SPLIT_MIN < len(only) < ESSAY_MIN:
            sentences = split_sentences(only)
            if len(sentences) > 1:
                out = [TextSegment(s) for s in sentences]

    if not out:
        # Keep the three-way contract even for blank output.
        out = [TextSegment((raw or "").strip())]
    return out


def _classify_line(line: str) -> List[Segment]:
    m = _VOICE.match(line)
    if m or _IMPLICIT_VOICE.match(line):
        body = m.group(1).strip() if m else line
        note = None
        nm = _SOUND_NOTE.match(body)
        if nm:
            note = nm.group(1).strip() or None
            body = nm.group(2).strip()
        if body:
            return [VoiceSegment(transcript=body, note=note)]
        logger.warning("Voice directive without transcript; keeping as text: %r", line)
        return [TextSegment(line)]

    if not _EMOJI.search(line):
        return [TextSegment(line)]

    out: List[Segment] = []
    pos = 0
    for em in _EMOJI.finditer(line):
        before = line[pos:em.start()].strip()
        if before:
            out.append(TextSegment(before))
        out.append(EmojiSegment(key=em.group(1).strip()))
        pos = em.end()
    after = line[pos:].strip()
    if after:
        out.append(TextSegment(after))
    return out


def split_sentences(text: str) -> List[str]:
    """Split on sentence-ending punctuation, keeping the punctuation."""
    parts = [p.strip() for p in _SENTENCE_END.split(text)]
    return [p for p in parts if p]
