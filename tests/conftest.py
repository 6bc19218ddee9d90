"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import heapq
import itertools
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from reply_engine.client import ApiConfig  # noqa: E402
from reply_engine.engine import ReplyEngine  # noqa: E402
from reply_engine.postprocess import EmojiCatalog, EmojiThrottle  # noqa: E402
from reply_engine.storage import InMemoryStore  # noqa: E402

T0 = 1_700_000_000_000


class ManualClock:
    """Epoch-millis clock that only moves when told to."""

    def __init__(self, start: int = T0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now


class _Handle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Timers fire only inside :meth:`advance`, in due order."""

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self._queue: List[Tuple[int, int, _Handle, Callable[[], None]]] = []
        self._seq = itertools.count()
        self.armed_total = 0

    def call_later(self, delay: float, callback: Callable[[], None]) -> _Handle:
        handle = _Handle()
        due = self.clock.now + int(delay * 1000)
        heapq.heappush(self._queue, (due, next(self._seq), handle, callback))
        self.armed_total += 1
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h, _ in self._queue if not h.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.clock.now + int(seconds * 1000)
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self.clock.now = max(self.clock.now, due)
            callback()
        self.clock.now = target


class ScriptedClient:
    """Stands in for CompletionClient: returns scripted replies, records calls."""

    def __init__(self, replies: Union[str, Exception, Sequence[Union[str, Exception]]] = "ok") -> None:
        if isinstance(replies, (str, Exception)):
            replies = [replies]
        self.replies = list(replies)
        self.config = ApiConfig(base_url="http://scripted.test/v1", model="scripted")
        self.calls: List[Tuple[str, str]] = []

    async def complete(self, system_prompt: str, user_message: str) -> str:
        self.calls.append((system_prompt, user_message))
        reply = self.replies[min(len(self.calls), len(self.replies)) - 1]
        if isinstance(reply, Exception):
            raise reply
        return reply


class FixedRandom:
    """random.Random stand-in whose draws are always ``value``."""

    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value

    def uniform(self, a: float, b: float) -> float:
        return a + (b - a) * self.value


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def scheduler(clock: ManualClock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture()
def make_engine(clock: ManualClock, scheduler: ManualScheduler):
    """Factory for engines wired to the manual clock/scheduler and an in-memory store."""

    def _make(client: Optional[ScriptedClient] = None, **overrides) -> ReplyEngine:
        kwargs = dict(
            store=InMemoryStore(),
            client=client or ScriptedClient(),
            clock=clock,
            scheduler=scheduler,
            catalog=EmojiCatalog({"hug": "🤗", "laugh": "😂"}),
            throttle=EmojiThrottle(rng=FixedRandom(0.0)),
            delay=lambda _draft: 1.0,
            sleep=no_sleep,
        )
        kwargs.update(overrides)
        return ReplyEngine(**kwargs)

    return _make


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for the disk store during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "REPLY_ENGINE_CONFIG" or var.startswith("REPLY_ENGINE__"):
            monkeypatch.delenv(var, raising=False)
    yield
