"""Reply orchestration: user input -> one generation call -> played bubbles.

Typical usage
-------------
engine = ReplyEngine.from_config(load_config())
engine.send_user_message("chat-1", "hi")        # debounced
outcome = await engine.request_reply_now("chat-1")
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from .aggregator import DEBOUNCE_WINDOW_MS, Debouncer, PendingTurn, find_last_exchange, find_pending
from .client import ApiConfig, CompletionClient
from .errors import GenerationError
from .events import EventBus
from .log import MessageLog
from .models import Kind, MemorySnapshot, Message, Sender, SummarySettings, TurnOutcome, new_id
from .player import DelayFn, RandomDelay, ReplyPlayer, SleepFn
from .postprocess import EmojiCatalog, EmojiThrottle, PostProcessor, strip_emoji, voice_duration
from .prompt import PersonaBook, build_system_prompt, build_user_prompt
from .protocol import Busy, NoReply, Normal, parse_reply
from .scheduling import AsyncioScheduler, Clock, Scheduler, system_clock
from .state import StateController
from .storage import make_store
from .summarizer import MemorySummarizer

logger = logging.getLogger(__name__)

USER_SPLIT_MAX = 100
USER_SPLIT_LOOKBACK = 20
USER_KEEP_WHOLE_OVER = 500
_USER_PUNCT = set("。！？，.!?,\n")


def split_user_input(text: str, max_len: int = USER_SPLIT_MAX) -> List[str]:
    """Split a long outgoing message at punctuation near each ``max_len`` boundary."""
    text = text.strip()
    if len(text) <= max_len:
        return [text] if text else []
    if "【公告】" in text or "【通知】" in text or len(text) > USER_KEEP_WHOLE_OVER:
        return [text]

    out: List[str] = []
    pos = 0
    while pos < len(text):
        end = pos + max_len
        if end < len(text):
            last = -1
            for i in range(max(pos, end - USER_SPLIT_LOOKBACK), end):
                if text[i] in _USER_PUNCT:
                    last = i
            if last > pos:
                end = last + 1
        piece = text[pos:end].strip()
        if piece:
            out.append(piece)
        pos = end
    return out


class ReplyEngine:
    """Owns the message log and conversation state for every conversation.

    Nothing else appends character messages or moves the state machine.
    """

    def __init__(
        self,
        *,
        store,
        client: CompletionClient,
        personas: Optional[Callable[[str], str]] = None,
        clock: Clock = system_clock,
        scheduler: Optional[Scheduler] = None,
        catalog: Optional[EmojiCatalog] = None,
        throttle: Optional[EmojiThrottle] = None,
        delay: Optional[DelayFn] = None,
        sleep: SleepFn = asyncio.sleep,
        bus: Optional[EventBus] = None,
        debounce_ms: int = DEBOUNCE_WINDOW_MS,
        context_messages: int = 20,
        busy_minutes: tuple = (1, 10),
        summary_defaults: Optional[SummarySettings] = None,
        max_snapshots: int = 20,
        summary_source_messages: int = 20,
        summary_chars: int = 400,
    ) -> None:
        self.store = store
        self.client = client
        self.personas = personas or PersonaBook()
        self.clock = clock
        self.bus = bus or EventBus()
        self.debounce_ms = debounce_ms
        self.context_messages = context_messages
        self.busy_minutes = busy_minutes

        self.log = MessageLog(store, self.bus)
        self.states = StateController(store, self.bus)
        self.debouncer = Debouncer(scheduler or AsyncioScheduler())
        self.catalog = catalog or EmojiCatalog()
        self.postprocessor = PostProcessor(self.catalog, throttle)
        self._visible: Set[str] = set()
        self.player = ReplyPlayer(
            self.log,
            clock=clock,
            delay=delay,
            sleep=sleep,
            bus=self.bus,
            is_visible=lambda cid: cid in self._visible,
        )
        self.summarizer = MemorySummarizer(
            store,
            self.log,
            clock=clock,
            max_snapshots=max_snapshots,
            source_messages=summary_source_messages,
            max_chars=summary_chars,
            default_settings=summary_defaults,
            bus=self.bus,
        )
        self._tasks: Set[asyncio.Task] = set()

    # ---------------------------------------------------------------------
    # Construction from config
    # ---------------------------------------------------------------------
    @classmethod
    def from_config(cls, cfg: Dict[str, Any], **overrides: Any) -> "ReplyEngine":
        eng = (cfg or {}).get("engine", {}) or {}
        emo = (cfg or {}).get("emoji", {}) or {}
        summ = (cfg or {}).get("summary", {}) or {}
        store = overrides.pop("store") if "store" in overrides else make_store(cfg)
        kwargs: Dict[str, Any] = dict(
            store=store,
            client=CompletionClient(ApiConfig.from_config(cfg)),
            personas=PersonaBook.from_config(cfg),
            catalog=EmojiCatalog(emo.get("catalog") or {}),
            throttle=EmojiThrottle(
                window=int(emo.get("window", 6)),
                accept_when_none=float(emo.get("accept_when_none", 0.7)),
                accept_when_one=float(emo.get("accept_when_one", 0.35)),
            ),
            delay=RandomDelay(float(eng.get("min_delay", 0.6)), float(eng.get("max_delay", 2.0))),
            debounce_ms=int(float(eng.get("debounce_seconds", 180)) * 1000),
            context_messages=int(eng.get("context_messages", 20)),
            busy_minutes=(int(eng.get("busy_min_minutes", 1)), int(eng.get("busy_max_minutes", 10))),
            summary_defaults=SummarySettings(
                enabled=bool(summ.get("enabled", True)), interval=int(summ.get("interval", 3))
            ),
            max_snapshots=int(summ.get("max_snapshots", 20)),
            summary_source_messages=int(summ.get("source_messages", 20)),
            summary_chars=int(summ.get("max_chars", 400)),
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    # ---------------------------------------------------------------------
    # User side
    # ---------------------------------------------------------------------
    def send_user_message(self, conversation_id: str, text: str, *, kind: str = "text") -> List[Message]:
        """Append the user's message(s) and arm the debounced reply."""
        now = self.clock()
        if kind == Kind.VOICE.value:
            transcript = strip_emoji(text)
            if not transcript:
                return []
            drafts = [Message(
                id=new_id(), sender=Sender.USER, kind=Kind.VOICE, text=transcript,
                created_at=now, voice_duration=voice_duration(transcript),
            )]
        else:
            drafts = [
                Message(id=new_id(), sender=Sender.USER, kind=Kind.TEXT, text=t, created_at=now)
                for t in split_user_input(text)
            ]
        appended = self.log.extend(conversation_id, drafts)
        if appended:
            self.trigger(conversation_id)
        return appended

    def trigger(self, conversation_id: str) -> str:
        """Evaluate the log and schedule at most one generation.

        While a turn is generating this does nothing; the turn re-runs it
        when it lands, so messages sent meanwhile still get answered.
        """
        if self.states.is_generating(conversation_id):
            logger.debug("Trigger for %s deferred: generation in flight", conversation_id)
            return "generating"
        pending = self._pending(conversation_id)
        if pending is None:
            return "nothing_pending"
        age = pending.age_ms(self.clock())
        if age < self.debounce_ms:
            wait = (self.debounce_ms - age) / 1000.0
            armed = self.debouncer.arm(conversation_id, wait, lambda: self.trigger(conversation_id))
            return "armed" if armed else "collapsed"
        self._spawn(self._resolve_in_background(conversation_id))
        return "resolving"

    async def request_reply_now(self, conversation_id: str) -> TurnOutcome:
        """Manual "reply" affordance: skip the rest of the debounce window."""
        self.debouncer.cancel(conversation_id)
        return await self.resolve(conversation_id)

    # ---------------------------------------------------------------------
    # Turns
    # ---------------------------------------------------------------------
    def _pending(self, conversation_id: str) -> Optional[PendingTurn]:
        answered = self.states.get(conversation_id).answered_through
        return find_pending(self.log.messages(conversation_id), answered)

    async def resolve(self, conversation_id: str) -> TurnOutcome:
        if self.states.is_generating(conversation_id):
            logger.warning("Resolve for %s skipped: generation in flight", conversation_id)
            return TurnOutcome(conversation_id, "skipped")
        pending = self._pending(conversation_id)
        if pending is None:
            return TurnOutcome(conversation_id, "nothing_pending")
        self.debouncer.cancel(conversation_id)
        return await self._run_turn(conversation_id, pending)

    async def regenerate(self, conversation_id: str) -> TurnOutcome:
        """Answer the last user run again, replacing the character run that answered it.

        The old run stays in the log until the new output has parsed, so a
        failed call leaves the conversation as it was.
        """
        if self.states.is_generating(conversation_id):
            logger.warning("Regenerate for %s skipped: generation in flight", conversation_id)
            return TurnOutcome(conversation_id, "skipped")
        exchange = find_last_exchange(self.log.messages(conversation_id))
        if exchange is None:
            return TurnOutcome(conversation_id, "nothing_pending")
        if not exchange.replies:
            return await self.resolve(conversation_id)
        self.debouncer.cancel(conversation_id)
        pending = PendingTurn(
            texts=tuple(m.text for m in exchange.user),
            message_ids=tuple(m.id for m in exchange.user),
            last_at=exchange.user[-1].created_at,
        )
        return await self._run_turn(conversation_id, pending, replacing=[m.id for m in exchange.replies])

    async def _run_turn(
        self, conversation_id: str, pending: PendingTurn, *, replacing: Sequence[str] = ()
    ) -> TurnOutcome:
        self.states.begin(conversation_id)
        logger.info("Turn for %s covering %d message(s)", conversation_id, len(pending.texts))
        try:
            return await self._complete_turn(conversation_id, pending, replacing)
        finally:
            self._after_turn(conversation_id, pending)

    async def _complete_turn(
        self, conversation_id: str, pending: PendingTurn, replacing: Sequence[str]
    ) -> TurnOutcome:
        try:
            raw = await self._invoke(conversation_id, pending, exclude=replacing)
        except BaseException as e:
            self.states.fail(conversation_id, str(e) or repr(e))
            raise

        parsed = parse_reply(raw, min_busy_minutes=self.busy_minutes[0], max_busy_minutes=self.busy_minutes[1])
        if replacing:
            removed = self.log.remove(conversation_id, replacing)
            logger.info("Regenerating %s: replaced %d bubble(s)", conversation_id, removed)

        if isinstance(parsed, Busy):
            busy_until = self.clock() + parsed.minutes * 60_000
            self.states.finish_busy(conversation_id, busy_until)
            logger.info("%s is busy for %d min", conversation_id, parsed.minutes)
            return TurnOutcome(conversation_id, "busy", busy_until=busy_until, reason=parsed.remark or None)

        if isinstance(parsed, NoReply):
            self.states.finish_no_reply(conversation_id, parsed.reason)
            logger.info("%s read without replying (%s)", conversation_id, parsed.reason)
            return TurnOutcome(conversation_id, "no_reply", reason=parsed.reason)

        if isinstance(parsed, Normal):
            drafts = self.postprocessor.process(parsed.segments, self.log.messages(conversation_id))
            if not drafts:
                logger.warning("Reply for %s left no bubbles after post-processing", conversation_id)
            try:
                emitted = await self.player.play(conversation_id, drafts)
            except BaseException as e:
                self.states.fail(conversation_id, repr(e))
                raise
            turn = self.states.finish_normal(conversation_id, answered_through=pending.message_ids[-1])
            logger.info("%s replied with %d bubble(s), turn %d", conversation_id, len(emitted), turn)
            self._spawn(self._summarize_after(conversation_id, turn))
            return TurnOutcome(conversation_id, "normal", messages=emitted)

        self.states.fail(conversation_id, f"unexpected parse result {parsed!r}")
        raise TypeError(f"unexpected parse result {parsed!r}")

    def _after_turn(self, conversation_id: str, covered: PendingTurn) -> None:
        # Messages sent while the turn was generating were never shown to the model.
        if self.states.is_generating(conversation_id):
            return
        pending = self._pending(conversation_id)
        if pending is not None and set(pending.message_ids) - set(covered.message_ids):
            logger.info("%s got new messages during the turn; re-evaluating", conversation_id)
            self.trigger(conversation_id)

    async def _invoke(self, conversation_id: str, pending: PendingTurn, *, exclude: Sequence[str] = ()) -> str:
        messages = self.log.messages(conversation_id)
        skip = set(pending.message_ids) | set(exclude)
        context = [m for m in messages if m.id not in skip][-self.context_messages:]
        system_prompt = build_system_prompt(
            self.personas(conversation_id),
            context,
            self.summarizer.latest(conversation_id),
            self.catalog.keys(),
        )
        return await self.client.complete(system_prompt, build_user_prompt(pending.texts))

    async def _resolve_in_background(self, conversation_id: str) -> None:
        try:
            await self.resolve(conversation_id)
        except GenerationError as e:
            # State already carries last_error for the UI to surface.
            logger.warning("Background turn for %s failed: %s", conversation_id, e)

    async def _summarize_after(self, conversation_id: str, turn: int) -> None:
        try:
            self.summarizer.on_turn_completed(conversation_id, turn)
        except Exception:
            logger.exception("Memory snapshot for %s failed", conversation_id)

    # ---------------------------------------------------------------------
    # Housekeeping
    # ---------------------------------------------------------------------
    def clear_history(self, conversation_id: str) -> None:
        self.debouncer.cancel(conversation_id)
        self.log.clear(conversation_id)
        self.states.reset(conversation_id)

    def open(self, conversation_id: str) -> None:
        self._visible.add(conversation_id)

    def close(self, conversation_id: str) -> None:
        # Timers and in-flight turns keep running.
        self._visible.discard(conversation_id)

    def state_view(self, conversation_id: str) -> Dict[str, Any]:
        view = self.states.view(conversation_id, self.clock(), self.log.messages(conversation_id))
        view["debounce_armed"] = self.debouncer.is_armed(conversation_id)
        return view

    def summarize_now(self, conversation_id: str) -> Optional[MemorySnapshot]:
        turn = self.states.get(conversation_id).turn_counter
        return self.summarizer.summarize_manual(conversation_id, turn)

    # ---------------------------------------------------------------------
    # Background tasks
    # ---------------------------------------------------------------------
    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait until every background turn and snapshot has landed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
