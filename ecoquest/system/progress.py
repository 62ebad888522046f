"""
进度追踪引擎
把读数路由到用户的每个进行中任务：节流缓冲、按目标类型计算进度、
里程碑与完成只结算一次、先写库成功再替换内存状态
"""

from __future__ import annotations

import copy
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from statistics import mean
from typing import Awaitable, Callable

from ..core.events import EventBus, EventType
from ..core.interfaces import ProfileStore, QuestStore
from ..storage.models import (
    DeviceThresholdObjective, EfficiencyObjective, Objective, ObjectiveType, Quest,
    QuestStatus, Reading, ReduceConsumptionObjective, RewardResult, StreakObjective,
    TimeWindowObjective,
)
from .points import MILESTONES, RewardCalculator

logger = logging.getLogger(__name__)


# ── 进度函数 ──────────────────────────────────────
# 每个函数根据一条读数更新目标状态，返回是否有变化；不会让 current 减小


def reduce_consumption(objective: ReduceConsumptionObjective, reading: Reading, quest: Quest) -> bool:
    """节电量 = 基线日均 × 已过天数 - 实际用电"""
    if objective.device_id:
        device = reading.devices.get(objective.device_id)
        if device is None:
            return False
        energy = device.energy_kwh
    else:
        energy = reading.energy_kwh

    if objective.anchor_at is None or reading.timestamp < objective.anchor_at:
        objective.anchor_kwh = energy
        objective.anchor_at = reading.timestamp
        return True

    elapsed_days = (reading.timestamp - objective.anchor_at).total_seconds() / 86400
    if elapsed_days <= 0:
        return False
    used = max(0.0, energy - objective.anchor_kwh)
    saved = round(objective.baseline_rate * elapsed_days - used, 3)
    if saved > objective.current:
        objective.current = saved
        return True
    return False


def count_periods(objective: DeviceThresholdObjective | TimeWindowObjective, reading: Reading, quest: Quest) -> bool:
    """满足条件的整点小时数；同一小时重复读数不重复计数"""
    if not objective.condition.matches(reading):
        return False
    bucket = reading.timestamp.strftime("%Y-%m-%dT%H")
    if bucket in objective.periods:
        return False
    objective.periods.add(bucket)
    objective.current = max(objective.current, float(len(objective.periods)))
    return True


def efficiency_threshold(objective: EfficiencyObjective, reading: Reading, quest: Quest) -> bool:
    score = reading.efficiency_score
    if score > objective.current:
        objective.current = score
        return True
    return False


def streak(objective: StreakObjective, reading: Reading, quest: Quest) -> bool:
    """满足条件的自然日集合 -> 最长连续天数"""
    if not objective.condition.matches(reading):
        return False
    day = reading.timestamp.date().isoformat()
    if day in objective.days:
        return False
    objective.days.add(day)
    longest, current_run = longest_run(objective.days)
    objective.current = max(objective.current, float(longest))
    quest.progress.streak = current_run
    return True


def longest_run(days: set[str]) -> tuple[int, int]:
    """返回 (最长连续天数, 截止最新一天的连续天数)"""
    if not days:
        return 0, 0
    ordered = sorted(date.fromisoformat(d) for d in days)
    longest = run = 1
    for prev, cur in zip(ordered, ordered[1:]):
        run = run + 1 if cur - prev == timedelta(days=1) else 1
        longest = max(longest, run)
    return longest, run


PROGRESS_FUNCTIONS: dict[ObjectiveType, Callable[[Objective, Reading, Quest], bool]] = {
    ObjectiveType.REDUCE_CONSUMPTION: reduce_consumption,
    ObjectiveType.DEVICE_USAGE_THRESHOLD: count_periods,
    ObjectiveType.TIME_WINDOW_COMPLIANCE: count_periods,
    ObjectiveType.EFFICIENCY_THRESHOLD: efficiency_threshold,
    ObjectiveType.STREAK: streak,
}


def objective_percentage(objective: Objective) -> float:
    if isinstance(objective, EfficiencyObjective):
        if objective.target <= objective.baseline:
            return 100.0 if objective.current >= objective.target else 0.0
        if objective.current <= objective.baseline:
            return 0.0
        ratio = (objective.current - objective.baseline) / (objective.target - objective.baseline)
    else:
        if objective.target <= 0:
            return 100.0
        ratio = objective.current / objective.target
    return round(min(1.0, max(0.0, ratio)) * 100, 2)


# ── 追踪器 ────────────────────────────────────────


@dataclass
class ProgressUpdate:
    quest: Quest
    previous: float
    milestones: list[int] = field(default_factory=list)
    completed: bool = False
    reward: RewardResult | None = None


CompletionHook = Callable[[Quest], Awaitable[None]]


class ProgressTracker:
    """进度追踪引擎；调用方需持有该用户的锁"""

    def __init__(
        self,
        store: QuestStore,
        profiles: ProfileStore,
        rewards: RewardCalculator,
        event_bus: EventBus,
        clock,
        throttle_seconds: float = 10.0,
        batch_limit: int = 50,
    ):
        self.store = store
        self.profiles = profiles
        self.rewards = rewards
        self.bus = event_bus
        self.clock = clock
        self.throttle_seconds = throttle_seconds
        self.batch_limit = batch_limit
        self.on_complete: CompletionHook | None = None

        self._quests: dict[str, dict[str, Quest]] = defaultdict(dict)
        self._last_accepted: dict[str, datetime] = {}
        self._buffers: dict[str, list[Reading]] = defaultdict(list)

    # ── 追踪集合 ──────────────────────────────────────

    def track(self, quest: Quest) -> None:
        if quest.status != QuestStatus.ACTIVE:
            return
        self._quests[quest.user_id].setdefault(quest.id, quest)

    def untrack(self, quest: Quest) -> None:
        self._quests.get(quest.user_id, {}).pop(quest.id, None)
        self._last_accepted.pop(quest.id, None)
        self._buffers.pop(quest.id, None)

    def untrack_user(self, user_id: str) -> None:
        for quest in list(self._quests.pop(user_id, {}).values()):
            self._last_accepted.pop(quest.id, None)
            self._buffers.pop(quest.id, None)

    def tracked(self, user_id: str) -> list[Quest]:
        return list(self._quests.get(user_id, {}).values())

    def get(self, user_id: str, quest_id: str) -> Quest | None:
        return self._quests.get(user_id, {}).get(quest_id)

    def users(self) -> list[str]:
        return [user_id for user_id, quests in self._quests.items() if quests]

    def pending(self, quest_id: str) -> int:
        return len(self._buffers.get(quest_id, ()))

    # ── 读数处理 ──────────────────────────────────────

    async def record(self, user_id: str, reading: Reading) -> list[ProgressUpdate]:
        """处理一条读数；节流窗口内的读数进缓冲，等下个进度周期批处理"""
        arrival = self.clock.now()
        updates = []
        for quest in self.tracked(user_id):
            last = self._last_accepted.get(quest.id)
            if last is not None and (arrival - last).total_seconds() < self.throttle_seconds:
                self._buffers[quest.id].append(reading)
                continue
            self._last_accepted[quest.id] = arrival
            update = await self._process(quest, [reading])
            if update:
                updates.append(update)
        return updates

    async def flush(self, user_id: str) -> list[ProgressUpdate]:
        """批处理缓冲的读数，按时间顺序每批最多 batch_limit 条，直到缓冲清空"""
        updates = []
        for quest in self.tracked(user_id):
            pending = self._buffers.pop(quest.id, None)
            if not pending:
                continue
            unique = sorted({r.timestamp: r for r in pending}.values(), key=lambda r: r.timestamp)
            self._last_accepted[quest.id] = self.clock.now()
            for i in range(0, len(unique), self.batch_limit):
                current = self.get(user_id, quest.id)
                if current is None:
                    break
                update = await self._process(current, unique[i:i + self.batch_limit])
                if update:
                    updates.append(update)
        return updates

    async def _process(self, quest: Quest, readings: list[Reading]) -> ProgressUpdate | None:
        """处理失败只影响这一个任务：读数回到缓冲，下个周期重试"""
        try:
            return await self._apply(quest, readings)
        except Exception:
            logger.exception("progress for %s not committed, retrying next tick", quest.id)
            if self.get(quest.user_id, quest.id) is not None:
                self._buffers[quest.id].extend(readings)
            return None

    async def _apply(self, quest: Quest, readings: list[Reading]) -> ProgressUpdate | None:
        if quest.status != QuestStatus.ACTIVE:
            return None

        working = copy.deepcopy(quest)
        previous = working.progress.percentage
        start = working.started_at or working.valid_from
        changed = False
        for reading in readings:
            if reading.timestamp < start or reading.timestamp > working.valid_until:
                continue
            for objective in working.objectives:
                if PROGRESS_FUNCTIONS[objective.type](objective, reading, working):
                    changed = True
            last = working.progress.last_activity
            if last is None or reading.timestamp > last:
                working.progress.last_activity = reading.timestamp
        if not changed:
            return None

        for objective in working.objectives:
            objective.percentage = max(objective.percentage, objective_percentage(objective))
            objective.completed = objective.percentage >= 100
        working.progress.percentage = max(previous, round(mean(o.percentage for o in working.objectives), 2))

        update = await self._settle(working, previous)
        if update.completed:
            self.untrack(working)
        else:
            self._quests[working.user_id][working.id] = working
        await self._announce(update)
        if update.completed and self.on_complete:
            await self.on_complete(working)
        return update

    async def _settle(self, working: Quest, previous: float) -> ProgressUpdate:
        """结算里程碑/完成奖励并持久化；奖励按幂等键应用，失败重试不会重复发放"""
        now = self.clock.now()
        update = ProgressUpdate(quest=working, previous=previous)
        for milestone in MILESTONES:
            if working.progress.percentage >= milestone and milestone not in working.progress.milestones_awarded:
                profile = await self.profiles.get_profile(working.user_id)
                await self.profiles.apply_reward(
                    self.rewards.milestone_reward(working, milestone, profile, now)
                )
                working.progress.milestones_awarded.append(milestone)
                update.milestones.append(milestone)

        if working.progress.percentage >= 100:
            update.reward = await self._finish(working, now)
            update.completed = True

        await self.store.save_quest(working)
        return update

    async def _finish(self, working: Quest, now: datetime) -> RewardResult:
        working.progress.status = QuestStatus.COMPLETED
        working.completed_at = now
        profile = await self.profiles.get_profile(working.user_id)
        reward = self.rewards.quest_reward(working, profile, now)
        await self.profiles.apply_reward(reward)
        return reward

    async def complete(self, quest: Quest) -> Quest:
        """直接完成 (人工确认)；失败时抛出，内存状态不变"""
        working = copy.deepcopy(quest)
        reward = await self._finish(working, self.clock.now())
        await self.store.save_quest(working)
        self.untrack(working)
        await self._announce(ProgressUpdate(
            quest=working, previous=quest.progress.percentage, completed=True, reward=reward,
        ))
        if self.on_complete:
            await self.on_complete(working)
        return working

    async def _announce(self, update: ProgressUpdate) -> None:
        quest = update.quest
        if quest.progress.percentage != update.previous:
            await self.bus.emit_simple(
                EventType.QUEST_PROGRESS,
                user_id=quest.user_id,
                quest_id=quest.id,
                percentage=quest.progress.percentage,
                previous=update.previous,
                quest=quest.to_dict(),
            )
        for milestone in update.milestones:
            await self.bus.emit_simple(
                EventType.QUEST_MILESTONE,
                user_id=quest.user_id,
                quest_id=quest.id,
                quest_title=quest.title,
                milestone=milestone,
            )
        if update.completed:
            await self.bus.emit_simple(
                EventType.QUEST_COMPLETED,
                user_id=quest.user_id,
                quest_id=quest.id,
                quest_title=quest.title,
                points_earned=update.reward.points if update.reward else 0,
                badges=list(update.reward.badges) if update.reward else [],
                quest=quest.to_dict(),
            )
