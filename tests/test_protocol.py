from __future__ import annotations

import pytest

from reply_engine.protocol import (
    Busy,
    EmojiSegment,
    NoReply,
    Normal,
    TextSegment,
    VoiceSegment,
    parse_reply,
    split_sentences,
)


def test_busy_directive_alone():
    out = parse_reply("[BUSY:5]")
    assert out == Busy(minutes=5)


def test_busy_with_short_remark_and_chinese_alias():
    out = parse_reply("[忙碌：3] 开会中")
    assert isinstance(out, Busy)
    assert out.minutes == 3
    assert out.remark == "开会中"


@pytest.mark.parametrize("raw,expected", [("[BUSY:0]", 1), ("[BUSY:45]", 10), ("[BUSY:-2]", 1)])
def test_busy_minutes_are_clamped(raw, expected):
    assert parse_reply(raw) == Busy(minutes=expected)


def test_no_reply_reason_inside_or_after_brackets():
    assert parse_reply("[NO_REPLY:in class]") == NoReply(reason="in class")
    assert parse_reply("[NO_REPLY] asleep") == NoReply(reason="asleep")
    assert parse_reply("[不回复:在洗澡]") == NoReply(reason="在洗澡")


def test_directive_followed_by_dialogue_is_plain_text():
    raw = "[BUSY:5]\nactually never mind, what's up?"
    out = parse_reply(raw)
    assert isinstance(out, Normal)
    assert out.segments == (TextSegment("[BUSY:5]"), TextSegment("actually never mind, what's up?"))


def test_short_line_after_directive_is_still_dialogue():
    out = parse_reply("[BUSY:5]\nok")
    assert out == Normal(segments=(TextSegment("[BUSY:5]"), TextSegment("ok")))


def test_no_reply_with_long_prose_is_plain_text():
    raw = "[NO_REPLY:busy] " + "but honestly I have been thinking about what you said yesterday a lot"
    out = parse_reply(raw)
    assert isinstance(out, Normal)
    assert len(out.segments) == 1


def test_lines_are_classified_independently():
    raw = "hey\n[VOICE](yawning) just woke up\n[EMOJI:hug]\n[WEIRD:thing]"
    out = parse_reply(raw)
    assert isinstance(out, Normal)
    assert out.segments == (
        TextSegment("hey"),
        VoiceSegment(transcript="just woke up", note="yawning"),
        EmojiSegment(key="hug"),
        TextSegment("[WEIRD:thing]"),
    )


def test_chinese_voice_prefix_and_implicit_voice():
    out = parse_reply("[语音]（声音带有一丝委屈）啊..是吗\n（周围充满了汽车的喇叭声）稍等一下")
    assert out.segments == (
        VoiceSegment(transcript="啊..是吗", note="声音带有一丝委屈"),
        VoiceSegment(transcript="稍等一下", note="周围充满了汽车的喇叭声"),
    )


def test_voice_without_transcript_degrades_to_text():
    out = parse_reply("[VOICE](silence)")
    assert out.segments == (TextSegment("[VOICE](silence)"),)


def test_inline_emoji_is_separated_from_text():
    out = parse_reply("haha [EMOJI:laugh] you wish")
    assert out.segments == (TextSegment("haha"), EmojiSegment("laugh"), TextSegment("you wish"))


def test_single_long_line_falls_back_to_sentence_split():
    raw = "今天好累啊。" * 20  # 120 chars, one line
    out = parse_reply(raw)
    assert isinstance(out, Normal)
    assert len(out.segments) == 20
    assert all(s.text == "今天好累啊。" for s in out.segments)


def test_single_essay_line_is_not_sentence_split():
    raw = "我想了很久。" * 40  # 240 chars
    out = parse_reply(raw)
    assert out.segments == (TextSegment(raw),)


@pytest.mark.parametrize(
    "raw",
    ["", "   ", "[BUSY:x]", "[NO_REPLY", "[[[", "\n\n\n", "[BUSY:3]\n[NO_REPLY:x]", "hello", "[EMOJI:]"],
)
def test_exactly_one_outcome_for_any_input(raw):
    out = parse_reply(raw)
    kinds = [isinstance(out, Busy), isinstance(out, NoReply), isinstance(out, Normal)]
    assert sum(kinds) == 1
    if isinstance(out, Normal):
        assert len(out.segments) >= 1


def test_split_sentences_keeps_punctuation():
    assert split_sentences("Really? Yes! ok.") == ["Really?", "Yes!", "ok."]
    assert split_sentences("真的吗？？好吧。") == ["真的吗？？", "好吧。"]
