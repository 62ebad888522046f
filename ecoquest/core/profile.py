"""
用户档案管理
积分、等级、段位、徽章、成就；奖励按幂等键只生效一次
"""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any

from .events import EventBus, EventType
from ..storage.models import RewardResult

logger = logging.getLogger(__name__)

POINTS_PER_LEVEL = 1000

# 段位表 (等级, 称号, 所需总积分, 特权)
RANK_TABLE: list[tuple[int, str, int, list[str]]] = [
    (1, "Energy Newbie", 0, ["basic_quests"]),
    (5, "Eco Apprentice", 2500, ["weekly_challenges", "energy_insights"]),
    (10, "Smart Saver", 7500, ["advanced_analytics", "custom_goals"]),
    (15, "Efficiency Expert", 20000, ["automation_rules", "priority_support"]),
    (20, "Green Guardian", 50000, ["community_leader", "exclusive_rewards"]),
    (25, "Eco Master", 125000, ["beta_features", "mentor_program"]),
    (30, "Sustainability Legend", 300000, ["all_features", "legendary_status"]),
]


def level_for_points(total_points: int) -> int:
    return max(0, total_points) // POINTS_PER_LEVEL + 1


def level_progress(total_points: int) -> dict[str, Any]:
    """当前等级内的进度"""
    level = level_for_points(total_points)
    into = max(0, total_points) - (level - 1) * POINTS_PER_LEVEL
    return {
        "level": level,
        "points_into_level": into,
        "next_level_at": level * POINTS_PER_LEVEL,
        "percentage": round(into / POINTS_PER_LEVEL * 100, 1),
    }


def rank_for(total_points: int) -> dict[str, Any]:
    """按总积分确定段位及到下一段位的进度"""
    index = 0
    for i, (_, _, required, _) in enumerate(RANK_TABLE):
        if total_points >= required:
            index = i
    level, title, required, perks = RANK_TABLE[index]
    result = {"rank_level": level, "title": title, "perks": perks, "next_title": None, "progress": 100.0}
    if index + 1 < len(RANK_TABLE):
        _, next_title, next_required, _ = RANK_TABLE[index + 1]
        span = next_required - required
        result["next_title"] = next_title
        result["points_to_next"] = next_required - total_points
        result["progress"] = round((total_points - required) / span * 100, 1)
    return result


@dataclass
class Profile:
    """用户档案"""
    user_id: str
    points: int = 0                  # 可消费积分
    total_points: int = 0            # 累计积分，决定等级
    level: int = 1
    badges: list[str] = field(default_factory=list)
    achievements: list[str] = field(default_factory=list)
    quests_completed: int = 0
    completed_templates: list[str] = field(default_factory=list)
    streak_days: int = 0
    last_completion_day: str | None = None
    energy_saved_kwh: float = 0.0
    community_help: int = 0
    applied_rewards: list[str] = field(default_factory=list)
    redeemed: list[str] = field(default_factory=list)

    def with_reward(self, reward: RewardResult, now: datetime) -> Profile:
        """返回应用奖励后的副本，不修改自身"""
        result = copy.deepcopy(self)
        result.points += reward.points
        result.total_points += reward.points
        result.level = level_for_points(result.total_points)
        for badge in reward.badges:
            if badge not in result.badges:
                result.badges.append(badge)
        for achievement in reward.achievements:
            if achievement not in result.achievements:
                result.achievements.append(achievement)
        result.energy_saved_kwh = round(result.energy_saved_kwh + reward.energy_saved_kwh, 3)
        result.community_help += reward.community_help
        if reward.completes_quest:
            result.quests_completed += 1
            if reward.template_id and reward.template_id not in result.completed_templates:
                result.completed_templates.append(reward.template_id)
            result._advance_streak(now)
        result.applied_rewards.append(reward.id)
        return result

    def _advance_streak(self, now: datetime) -> None:
        today = now.date().isoformat()
        yesterday = (now.date() - timedelta(days=1)).isoformat()
        if self.last_completion_day == today:
            return
        if self.last_completion_day == yesterday:
            self.streak_days += 1
        else:
            self.streak_days = 1
        self.last_completion_day = today

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["level_progress"] = level_progress(self.total_points)
        data["rank"] = rank_for(self.total_points)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Profile:
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


class ProfileManager:
    """用户档案管理器，内存缓存 + 数据库持久化"""

    def __init__(self, db, event_bus: EventBus, clock=None):
        self.db = db
        self.bus = event_bus
        self.clock = clock
        self._profiles: dict[str, Profile] = {}

    def _now(self) -> datetime:
        return self.clock.now() if self.clock else datetime.now()

    async def get_profile(self, user_id: str) -> Profile:
        profile = self._profiles.get(user_id)
        if profile is None:
            data = await self.db.load_profile(user_id) if self.db else None
            profile = Profile.from_dict(data) if data else Profile(user_id=user_id)
            self._profiles[user_id] = profile
        return profile

    async def get_level(self, user_id: str) -> int:
        return (await self.get_profile(user_id)).level

    async def get_completed_quest_ids(self, user_id: str) -> set[str]:
        """已完成过的模板 id"""
        return set((await self.get_profile(user_id)).completed_templates)

    async def apply_reward(self, reward: RewardResult) -> bool:
        """应用奖励；同一 reward.id 重复调用无副作用"""
        profile = await self.get_profile(reward.user_id)
        if reward.id in profile.applied_rewards:
            logger.debug("reward %s already applied", reward.id)
            return False

        updated = profile.with_reward(reward, self._now())
        await self._save(updated)
        self._profiles[reward.user_id] = updated

        await self.bus.emit_simple(
            EventType.POINTS_GAINED,
            user_id=reward.user_id,
            amount=reward.points,
            source=reward.reason,
            total_points=updated.total_points,
        )
        new_badges = [b for b in updated.badges if b not in profile.badges]
        new_achievements = [a for a in updated.achievements if a not in profile.achievements]
        for badge in new_badges:
            await self.bus.emit_simple(EventType.BADGE_UNLOCKED, user_id=reward.user_id, badge=badge)
        for achievement in new_achievements:
            await self.bus.emit_simple(
                EventType.ACHIEVEMENT_UNLOCKED, user_id=reward.user_id, achievement=achievement,
            )
        if updated.level > profile.level:
            await self.bus.emit_simple(
                EventType.LEVEL_UP,
                user_id=reward.user_id,
                new_level=updated.level,
                rank=rank_for(updated.total_points)["title"],
            )
        await self.bus.emit_simple(EventType.REWARD_APPLIED, user_id=reward.user_id, reward=reward.to_dict())
        return True

    async def spend_points(self, user_id: str, amount: int, item_id: str) -> Profile:
        """扣除可消费积分 (调用方已校验余额)"""
        profile = copy.deepcopy(await self.get_profile(user_id))
        profile.points -= amount
        profile.redeemed.append(item_id)
        await self._save(profile)
        self._profiles[user_id] = profile
        return profile

    async def _save(self, profile: Profile) -> None:
        if self.db:
            await self.db.save_profile(asdict(profile))
