"""
任务引擎
对外服务入口：组装分析、实例化、进度追踪与生命周期，管理用户会话与进度订阅
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable

from ..cognition.opportunity import OpportunityAnalyzer
from ..cognition.usage import UsageAnalyzer
from ..core.config import QuestsConfig
from ..core.errors import UserNotFound
from ..core.events import Event, EventBus, EventType
from ..core.interfaces import ProfileStore, QuestStore, TelemetryFeed
from ..core.scheduler import Scheduler, SystemClock
from ..storage.models import Quest, QuestStatus, Reading, UsageSnapshot
from .instantiator import QuestInstantiator
from .lifecycle import LifecycleSupervisor
from .points import RewardCalculator
from .progress import ProgressTracker
from .templates import TemplateRegistry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Event], Any]

# 推送给进度订阅者的事件
PROGRESS_EVENTS = (
    EventType.QUEST_STARTED,
    EventType.QUEST_PROGRESS,
    EventType.QUEST_MILESTONE,
    EventType.QUEST_COMPLETED,
    EventType.QUEST_EXPIRED,
    EventType.QUEST_FAILED,
)


@dataclass
class Session:
    """用户会话；关闭后在途的计算不再修改状态"""
    user_id: str
    unsubscribe: Callable[[], None] | None = None
    closed: bool = False


class QuestEngine:
    """任务引擎"""

    def __init__(
        self,
        store: QuestStore,
        profiles: ProfileStore,
        event_bus: EventBus,
        config: QuestsConfig | None = None,
        feed: TelemetryFeed | None = None,
        clock=None,
        registry: TemplateRegistry | None = None,
        analyzer: OpportunityAnalyzer | None = None,
        instantiator: QuestInstantiator | None = None,
        rewards: RewardCalculator | None = None,
    ):
        self.store = store
        self.profiles = profiles
        self.bus = event_bus
        self.config = config or QuestsConfig()
        self.feed = feed
        self.clock = clock or SystemClock()
        self.registry = registry or TemplateRegistry()
        self.usage = UsageAnalyzer(self.config.history_size)
        self.rewards = rewards or RewardCalculator()

        self.tracker = ProgressTracker(
            store,
            profiles,
            self.rewards,
            event_bus,
            self.clock,
            throttle_seconds=self.config.throttle_seconds,
            batch_limit=self.config.batch_limit,
        )
        self.supervisor = LifecycleSupervisor(
            store,
            self.registry,
            analyzer or OpportunityAnalyzer(),
            self.usage,
            instantiator or QuestInstantiator(),
            self.tracker,
            profiles,
            event_bus,
            self.config,
            self.clock,
        )

        self.scheduler = Scheduler()
        self.scheduler.add("generation", self.config.generation_interval, self.supervisor.generation_cycle)
        self.scheduler.add("progress", self.config.progress_interval, self.supervisor.progress_cycle)

        self._sessions: dict[str, Session] = {}
        self._listeners: dict[str, list[ProgressCallback]] = {}
        self._delivery: dict[str, asyncio.Task] = {}
        # 每关闭一次会话加一；排队中的读数带着入队时的值，不一致即丢弃
        self._epochs: dict[str, int] = defaultdict(int)
        self._tasks: set[asyncio.Task] = set()
        self._running = False

        for event_type in PROGRESS_EVENTS:
            self.bus.on(event_type, self._dispatch_progress)

    # ── 生命周期 ──────────────────────────────────────

    async def start(self, run_cycles: bool = True) -> None:
        self._running = True
        if run_cycles:
            self.scheduler.start()
        await self.bus.emit_simple(EventType.SYSTEM_START, source="quest_engine")
        logger.info("quest engine started (cap=%d)", self.config.max_active_quests)

    async def stop(self) -> None:
        self._running = False
        await self.scheduler.stop()
        for user_id in list(self._sessions):
            await self.close_session(user_id)
        await self.drain()
        await self.bus.emit_simple(EventType.SYSTEM_STOP, source="quest_engine")
        logger.info("quest engine stopped")

    async def drain(self) -> None:
        """等待在途的读数处理与订阅回调结束"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_generation_cycle(self) -> None:
        await self.scheduler.fire("generation")

    async def run_progress_cycle(self) -> None:
        await self.scheduler.fire("progress")

    # ── 会话 ──────────────────────────────────────────

    async def open_session(self, user_id: str) -> Session:
        """打开会话并订阅该用户的遥测"""
        session = await self._ensure_session(user_id)
        if self.feed is not None and session.unsubscribe is None:
            epoch = self._epochs[user_id]
            session.unsubscribe = self.feed.subscribe(
                user_id, lambda reading: self._ingest_if_current(user_id, reading, epoch),
            )
        return session

    async def close_session(self, user_id: str) -> None:
        """关闭会话：取消订阅、清理缓冲与监听；没有会话时抛出 UserNotFound"""
        session = self._sessions.pop(user_id, None)
        if session is None:
            raise UserNotFound(user_id)
        session.closed = True
        self._epochs[user_id] += 1
        if session.unsubscribe:
            session.unsubscribe()
        async with self.supervisor.lock(user_id):
            self.tracker.untrack_user(user_id)
        self._listeners.pop(user_id, None)
        self.supervisor.unregister_user(user_id)
        await self.bus.emit_simple(EventType.SESSION_CLOSED, user_id=user_id)

    async def _ensure_session(self, user_id: str) -> Session:
        session = self._sessions.get(user_id)
        if session is not None:
            return session
        session = Session(user_id=user_id)
        self._sessions[user_id] = session
        async with self.supervisor.lock(user_id):
            for quest in await self.store.get_active_quests(user_id):
                self.tracker.track(quest)
        self.supervisor.register_user(user_id)
        await self.bus.emit_simple(EventType.SESSION_OPENED, user_id=user_id)
        return session

    # ── 对外 API ──────────────────────────────────────

    async def generate_quests_for_user(
        self, user_id: str, snapshot: UsageSnapshot | None = None,
    ) -> list[Quest]:
        await self._ensure_session(user_id)
        return await self.supervisor.generate_for_user(user_id, snapshot)

    async def start_quest(self, user_id: str, quest_id: str) -> Quest:
        await self._ensure_session(user_id)
        return await self.supervisor.start_quest(user_id, quest_id)

    async def complete_quest(self, user_id: str, quest_id: str) -> Quest:
        return await self.supervisor.complete_quest(user_id, quest_id)

    async def abandon_quest(self, user_id: str, quest_id: str) -> Quest:
        return await self.supervisor.abandon_quest(user_id, quest_id)

    def record_reading(self, user_id: str, reading: Reading) -> None:
        """接收读数，立即返回；处理在后台进行。入队后会话被关闭则丢弃"""
        self._spawn(self._ingest_if_current(user_id, reading, self._epochs[user_id]))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background task failed: %r", task.exception())

    async def _ingest_if_current(self, user_id: str, reading: Reading, epoch: int) -> None:
        if self._epochs[user_id] != epoch:
            logger.debug("dropping reading for closed session %s", user_id)
            return
        await self.ingest_reading(user_id, reading)

    async def ingest_reading(self, user_id: str, reading: Reading) -> None:
        session = await self._ensure_session(user_id)
        if session.closed:
            return
        self.usage.record(user_id, reading)
        await self.bus.emit_simple(
            EventType.READING_RECEIVED,
            user_id=user_id,
            timestamp=reading.timestamp.isoformat(),
            power_kw=reading.power_kw,
        )
        async with self.supervisor.lock(user_id):
            if session.closed:
                return
            await self.tracker.record(user_id, reading)

    async def get_active_quests(self, user_id: str) -> list[Quest]:
        tracked = {q.id: q for q in self.tracker.tracked(user_id)}
        stored = await self.store.get_active_quests(user_id)
        return [tracked.get(q.id, q) for q in stored]

    async def get_available_quests(self, user_id: str) -> list[Quest]:
        return await self.store.get_user_quests(user_id, [QuestStatus.AVAILABLE])

    async def get_quest_history(self, user_id: str) -> list[Quest]:
        return await self.store.get_user_quests(user_id)

    def snapshot_for(self, user_id: str) -> UsageSnapshot:
        return self.usage.snapshot_for(user_id)

    def subscribe_progress(self, user_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """订阅某用户的任务进度事件，返回取消订阅函数"""
        self._listeners.setdefault(user_id, []).append(callback)

        def unsubscribe() -> None:
            listeners = self._listeners.get(user_id, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    async def _dispatch_progress(self, event: Event) -> None:
        user_id = event.data.get("user_id")
        if self._listeners.get(user_id):
            # 事件可能在持锁时发出；回调放到独立任务里，按用户保持顺序
            task = self._spawn(self._deliver(user_id, event, self._delivery.get(user_id)))
            self._delivery[user_id] = task
            task.add_done_callback(lambda done: self._delivery_done(user_id, done))

        if event.type != EventType.QUEST_PROGRESS:
            await self.store.log_activity(
                event.type.value,
                {k: v for k, v in event.data.items() if k != "quest"},
                user_id=user_id,
            )

    async def _deliver(self, user_id: str, event: Event, previous: asyncio.Task | None) -> None:
        """回调可以再调用引擎 (如生成、接受任务)，不会与读数处理互相等待"""
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        for callback in list(self._listeners.get(user_id, [])):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("progress listener failed for %s", user_id)

    def _delivery_done(self, user_id: str, task: asyncio.Task) -> None:
        if self._delivery.get(user_id) is task:
            del self._delivery[user_id]
