"""
生命周期监督
并发任务上限、接受/放弃/完成/过期的状态迁移、补位生成，以及两个独立的周期
"""

import asyncio
import copy
import logging
from collections import defaultdict
from datetime import datetime, timedelta

from ..cognition.opportunity import OpportunityAnalyzer
from ..cognition.usage import UsageAnalyzer
from ..core.config import QuestsConfig
from ..core.errors import AlreadyActive, CapReached, InvalidTransition, QuestNotFound
from ..core.events import EventBus, EventType
from ..core.interfaces import ProfileStore, QuestStore
from ..storage.models import Quest, QuestStatus, UsageSnapshot
from .instantiator import QuestInstantiator
from .progress import ProgressTracker
from .templates import TemplateRegistry

logger = logging.getLogger(__name__)


class LifecycleSupervisor:
    """生命周期监督者；每个用户一把锁，串行化读-改-写"""

    def __init__(
        self,
        store: QuestStore,
        registry: TemplateRegistry,
        analyzer: OpportunityAnalyzer,
        usage: UsageAnalyzer,
        instantiator: QuestInstantiator,
        tracker: ProgressTracker,
        profiles: ProfileStore,
        event_bus: EventBus,
        config: QuestsConfig,
        clock,
    ):
        self.store = store
        self.registry = registry
        self.analyzer = analyzer
        self.usage = usage
        self.instantiator = instantiator
        self.tracker = tracker
        self.profiles = profiles
        self.bus = event_bus
        self.config = config
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._users: set[str] = set()

        self.tracker.on_complete = self._on_quest_completed

    def lock(self, user_id: str) -> asyncio.Lock:
        return self._locks[user_id]

    def register_user(self, user_id: str) -> None:
        self._users.add(user_id)

    def unregister_user(self, user_id: str) -> None:
        self._users.discard(user_id)

    @property
    def users(self) -> list[str]:
        return sorted(self._users)

    # ── 生成 ──────────────────────────────────────────

    async def generate_for_user(self, user_id: str, snapshot: UsageSnapshot | None = None) -> list[Quest]:
        async with self.lock(user_id):
            return await self._generate_locked(user_id, snapshot)

    async def _generate_locked(self, user_id: str, snapshot: UsageSnapshot | None = None) -> list[Quest]:
        """按空位数补充可接受任务 (调用方持锁)"""
        now = self.clock.now()
        open_quests = await self.store.get_user_quests(
            user_id, [QuestStatus.AVAILABLE, QuestStatus.ACTIVE],
        )
        for quest in [q for q in open_quests if q.status == QuestStatus.AVAILABLE and q.valid_until < now]:
            await self._terminate(quest, QuestStatus.EXPIRED, now)
            open_quests.remove(quest)

        slots = self.config.max_active_quests - len(open_quests)
        if slots <= 0:
            return []

        level = await self.profiles.get_level(user_id)
        completed = await self.profiles.get_completed_quest_ids(user_id)
        taken = {q.template_id for q in open_quests}
        templates = [t for t in self.registry.eligible_for(level, completed) if t.id not in taken]

        if snapshot is None:
            snapshot = self.usage.snapshot_for(user_id)
            await self.bus.emit_simple(EventType.SNAPSHOT_BUILT, user_id=user_id, snapshot=snapshot.to_dict())
        opportunities = self.analyzer.analyze(snapshot, templates)
        pairs = [(self.registry.get(o.template_id), o) for o in opportunities]
        quests = self.instantiator.instantiate_many(pairs, user_id, now, slots)

        for quest in quests:
            await self.store.save_quest(quest)
        if quests:
            await self.bus.emit_simple(
                EventType.QUESTS_GENERATED,
                user_id=user_id,
                quests=[
                    {"quest_id": q.id, "title": q.title, "reward_points": q.reward_points}
                    for q in quests
                ],
            )
            logger.info("generated %d quests for %s", len(quests), user_id)
        return quests

    async def generation_cycle(self) -> None:
        """生成周期：为所有已登记用户刷新可接受任务"""
        for user_id in self.users:
            try:
                await self.generate_for_user(user_id)
            except Exception:
                logger.exception("generation failed for %s", user_id)

    # ── 状态迁移 ──────────────────────────────────────

    async def start_quest(self, user_id: str, quest_id: str) -> Quest:
        async with self.lock(user_id):
            quest = await self.store.get_quest(quest_id)
            if quest is None or quest.user_id != user_id:
                raise QuestNotFound(quest_id)
            self.registry.get(quest.template_id)

            if quest.status == QuestStatus.ACTIVE:
                raise AlreadyActive(quest_id)
            if quest.is_terminal:
                raise InvalidTransition(quest_id, quest.status.value, QuestStatus.ACTIVE.value)

            now = self.clock.now()
            if quest.valid_until < now:
                await self._terminate(quest, QuestStatus.EXPIRED, now)
                raise InvalidTransition(quest_id, QuestStatus.EXPIRED.value, QuestStatus.ACTIVE.value)

            active = await self.store.get_active_quests(user_id)
            if any(q.template_id == quest.template_id for q in active):
                raise AlreadyActive(quest_id)
            if len(active) >= self.config.max_active_quests:
                raise CapReached(user_id, self.config.max_active_quests)

            template = self.registry.get(quest.template_id)
            quest.progress.status = QuestStatus.ACTIVE
            quest.started_at = now
            quest.valid_from = now
            quest.valid_until = now + timedelta(hours=template.duration_hours)
            await self.store.save_quest(quest)
            self.tracker.track(quest)

        await self.bus.emit_simple(
            EventType.QUEST_STARTED,
            user_id=user_id,
            quest_id=quest.id,
            quest_title=quest.title,
            valid_until=quest.valid_until.isoformat(),
            quest=quest.to_dict(),
        )
        return quest

    async def complete_quest(self, user_id: str, quest_id: str) -> Quest:
        """人工确认完成；已终结的任务不会再次结算"""
        async with self.lock(user_id):
            quest = await self._load(user_id, quest_id)
            if quest.status != QuestStatus.ACTIVE:
                raise InvalidTransition(quest_id, quest.status.value, QuestStatus.COMPLETED.value)
            return await self.tracker.complete(quest)

    async def abandon_quest(self, user_id: str, quest_id: str) -> Quest:
        async with self.lock(user_id):
            quest = await self._load(user_id, quest_id)
            if quest.is_terminal:
                raise InvalidTransition(quest_id, quest.status.value, QuestStatus.FAILED.value)
            was_active = quest.status == QuestStatus.ACTIVE
            quest = await self._terminate(quest, QuestStatus.FAILED, self.clock.now())
            if was_active:
                await self._top_up(user_id)
            return quest

    async def _load(self, user_id: str, quest_id: str) -> Quest:
        quest = self.tracker.get(user_id, quest_id) or await self.store.get_quest(quest_id)
        if quest is None or quest.user_id != user_id:
            raise QuestNotFound(quest_id)
        return quest

    async def _terminate(self, quest: Quest, status: QuestStatus, now: datetime) -> Quest:
        """迁移到过期/失败，不发奖励；写库成功后才替换内存状态"""
        quest = copy.deepcopy(quest)
        quest.progress.status = status
        await self.store.save_quest(quest)
        self.tracker.untrack(quest)
        event_type = EventType.QUEST_EXPIRED if status == QuestStatus.EXPIRED else EventType.QUEST_FAILED
        await self.bus.emit_simple(
            event_type,
            user_id=quest.user_id,
            quest_id=quest.id,
            quest_title=quest.title,
            percentage=quest.progress.percentage,
            reason=status.value,
            at=now.isoformat(),
        )
        return quest

    async def _on_quest_completed(self, quest: Quest) -> None:
        """完成后补位 (已持锁)"""
        await self._top_up(quest.user_id)

    async def _top_up(self, user_id: str) -> None:
        if self.config.auto_generate:
            await self._generate_locked(user_id)

    # ── 进度周期 ──────────────────────────────────────

    async def progress_cycle(self) -> None:
        """进度周期：先批处理缓冲读数，再惰性判定过期"""
        for user_id in self.tracker.users():
            async with self.lock(user_id):
                await self.tracker.flush(user_id)
        await self.expire_overdue(self.clock.now())
        await self.bus.emit_simple(EventType.SYSTEM_TICK, at=self.clock.now().isoformat())

    async def expire_overdue(self, now: datetime) -> list[Quest]:
        expired = []
        for stale in await self.store.get_quests_expiring_before(now):
            async with self.lock(stale.user_id):
                quest = self.tracker.get(stale.user_id, stale.id) or await self.store.get_quest(stale.id)
                if quest is None or quest.is_terminal or quest.valid_until >= now:
                    continue
                if quest.progress.percentage >= 100:
                    continue
                was_active = quest.status == QuestStatus.ACTIVE
                quest = await self._terminate(quest, QuestStatus.EXPIRED, now)
                expired.append(quest)
                logger.info("quest %s expired at %.1f%%", quest.id, quest.progress.percentage)
                if was_active:
                    await self._top_up(quest.user_id)
        return expired
