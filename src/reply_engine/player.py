"""Replay a finished reply as a sequence of live-typed bubbles."""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, List, Optional, Sequence

from .events import SCROLL_TO_BOTTOM, EventBus
from .log import MessageLog
from .models import Message, new_id
from .postprocess import Draft
from .scheduling import Clock, system_clock

logger = logging.getLogger(__name__)

DelayFn = Callable[[Draft], float]
SleepFn = Callable[[float], Awaitable[None]]


class RandomDelay:
    """Uniform pause between bubbles, seedable for tests."""

    def __init__(self, low: float = 0.6, high: float = 2.0, rng: Optional[random.Random] = None) -> None:
        if low > high:
            raise ValueError("low must not exceed high")
        self.low = low
        self.high = high
        self.rng = rng or random.Random()

    def __call__(self, draft: Draft) -> float:
        return self.rng.uniform(self.low, self.high)


class ReplyPlayer:
    """Append drafts one by one, pausing between them.

    Each append is visible to log watchers before the next draft is stamped.
    Playback never stops early: a conversation that is not on screen still
    gets every message, it only skips the scroll-to-bottom notification.
    """

    def __init__(
        self,
        log: MessageLog,
        *,
        clock: Clock = system_clock,
        delay: Optional[DelayFn] = None,
        sleep: SleepFn = asyncio.sleep,
        id_factory: Callable[[], str] = new_id,
        bus: Optional[EventBus] = None,
        is_visible: Callable[[str], bool] = lambda _cid: False,
    ) -> None:
        self.log = log
        self.clock = clock
        self.delay = delay or RandomDelay()
        self.sleep = sleep
        self.id_factory = id_factory
        self.bus = bus
        self.is_visible = is_visible

    async def play(self, conversation_id: str, drafts: Sequence[Draft]) -> List[Message]:
        emitted: List[Message] = []
        for i, draft in enumerate(drafts):
            if i:
                await self.sleep(self.delay(draft))
            msg = draft.to_message(self.id_factory(), self.clock())
            self.log.append(conversation_id, msg)
            emitted.append(msg)
            if self.bus is not None and self.is_visible(conversation_id):
                self.bus.publish(SCROLL_TO_BOTTOM, conversation_id, {"message_id": msg.id})
        logger.debug("Played %d bubble(s) into %s", len(emitted), conversation_id)
        return emitted
