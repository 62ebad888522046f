"""
积分计算引擎
基础分 × 等级 × 连续天数 × 时段 × 难度，四个乘数依次相乘后取整
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..core.profile import Profile
from ..storage.models import Difficulty, Quest, QuestCategory, QuestType, RewardResult
from .achievement import AchievementEngine


# 各类行为的基础分
BASE_POINTS: dict[str, int] = {
    # 日常行为
    "turnOffAppliance": 15,
    "energySavingMode": 25,
    "peakHourOptimization": 50,
    "smartScheduling": 40,
    # 设备升级
    "ledBulbUpgrade": 150,
    "efficientApplianceUpgrade": 300,
    "solarPanelInstall": 1000,
    "smartThermostatInstall": 500,
    # 坚持类
    "consecutiveDaysSaving": 75,
    "weeklyTargetAchievement": 200,
    "monthlyTargetAchievement": 800,
    "perfectWeek": 500,
    # 社区
    "helpNeighbor": 50,
    "shareAchievement": 25,
    "communityChallenge": 200,
}

# 等级门槛 -> 乘数 (取不超过当前等级的最高档)
LEVEL_MULTIPLIERS: dict[int, float] = {1: 1.0, 5: 1.1, 10: 1.2, 15: 1.3, 20: 1.5, 25: 1.7, 30: 2.0}

# 连续天数门槛 -> 乘数
STREAK_MULTIPLIERS: dict[int, float] = {3: 1.2, 7: 1.5, 14: 1.8, 30: 2.0, 90: 2.5, 365: 3.0}

TIME_OF_DAY_MULTIPLIERS: dict[str, float] = {"peak": 2.0, "offPeak": 1.3, "superOffPeak": 1.0}

DIFFICULTY_MULTIPLIERS: dict[Difficulty, float] = {
    Difficulty.EASY: 1.0,
    Difficulty.MEDIUM: 1.3,
    Difficulty.HARD: 1.7,
    Difficulty.EXPERT: 2.5,
}

PENALTIES: dict[str, int] = {
    "highConsumption": -30,
    "missedTarget": -50,
    "inefficientUsage": -20,
    "breakingStreak": -100,
}

# 任务类型完成时对应的行为
COMPLETION_ACTIONS: dict[QuestType, str] = {
    QuestType.DAILY: "energySavingMode",
    QuestType.WEEKLY: "weeklyTargetAchievement",
    QuestType.MONTHLY: "monthlyTargetAchievement",
    QuestType.CHALLENGE: "peakHourOptimization",
    QuestType.COMMUNITY: "communityChallenge",
}

MILESTONES = (25, 50, 75)
EARLY_COMPLETION_RATIO = 0.8
EARLY_COMPLETION_BONUS = 1.2


@dataclass
class PointsContext:
    level: int = 1
    streak: int = 0
    time_of_day: str = "offPeak"
    difficulty: Difficulty = Difficulty.EASY


def _step(table: dict[int, float], value: int, default: float = 1.0) -> float:
    multiplier = default
    for threshold, factor in sorted(table.items()):
        if value >= threshold:
            multiplier = factor
    return multiplier


def level_multiplier(level: int) -> float:
    return _step(LEVEL_MULTIPLIERS, level)


def streak_multiplier(streak: int) -> float:
    return _step(STREAK_MULTIPLIERS, streak)


def time_of_day_for(moment: datetime) -> str:
    """峰时 06-10、17-21；深夜 23-05 为低谷；其余为平时"""
    hour = moment.hour
    if 6 <= hour < 10 or 17 <= hour < 21:
        return "peak"
    if hour >= 23 or hour < 5:
        return "superOffPeak"
    return "offPeak"


def compute_points(action: str, context: PointsContext) -> int:
    """计算某行为获得的积分"""
    if action not in BASE_POINTS:
        raise KeyError(f"unknown action: {action}")
    points = float(BASE_POINTS[action])
    points *= level_multiplier(context.level)
    points *= streak_multiplier(context.streak)
    points *= TIME_OF_DAY_MULTIPLIERS.get(context.time_of_day, 1.0)
    points *= DIFFICULTY_MULTIPLIERS[context.difficulty]
    return round(points)


def compute_penalty(kind: str, severity: float = 1.0) -> int:
    if kind not in PENALTIES:
        raise KeyError(f"unknown penalty: {kind}")
    return round(PENALTIES[kind] * severity)


def milestone_bonus(milestone: int) -> int:
    return 10 * (milestone // 25)


class RewardCalculator:
    """任务完成 / 里程碑的奖励结算"""

    def __init__(self, achievements: AchievementEngine | None = None):
        self.achievements = achievements or AchievementEngine()

    def time_bonus(self, quest: Quest, completed_at: datetime) -> float:
        """在有效期前 80% 内完成给予 1.2 倍"""
        start = quest.started_at or quest.valid_from
        window = (quest.valid_until - start).total_seconds()
        if window <= 0:
            return 1.0
        used = (completed_at - start).total_seconds()
        return EARLY_COMPLETION_BONUS if used <= window * EARLY_COMPLETION_RATIO else 1.0

    def quest_reward(self, quest: Quest, profile: Profile, completed_at: datetime) -> RewardResult:
        context = PointsContext(
            level=profile.level,
            streak=profile.streak_days,
            time_of_day=time_of_day_for(completed_at),
            difficulty=quest.difficulty,
        )
        points = round(quest.reward_points * self.time_bonus(quest, completed_at))
        points += quest.bonus_points
        points += compute_points(COMPLETION_ACTIONS[quest.type], context)

        reward = RewardResult(
            id=f"{quest.id}:completion",
            user_id=quest.user_id,
            quest_id=quest.id,
            template_id=quest.template_id,
            points=points,
            badges=list(quest.badges),
            reason=f"quest:{quest.id}",
            energy_saved_kwh=quest.savings.energy_kwh,
            community_help=1 if quest.category == QuestCategory.COMMUNITY else 0,
            completes_quest=True,
        )
        return self._with_unlocks(reward, profile, completed_at)

    def milestone_reward(
        self, quest: Quest, milestone: int, profile: Profile, now: datetime,
    ) -> RewardResult:
        reward = RewardResult(
            id=f"{quest.id}:milestone:{milestone}",
            user_id=quest.user_id,
            quest_id=quest.id,
            template_id=quest.template_id,
            points=milestone_bonus(milestone),
            reason=f"milestone:{quest.id}:{milestone}",
        )
        return self._with_unlocks(reward, profile, now)

    def _with_unlocks(self, reward: RewardResult, profile: Profile, now: datetime) -> RewardResult:
        """预演奖励后的档案，把新满足的徽章/成就并入同一次结算

        成就奖励积分可能再跨过其他门槛，反复预演直到没有新的解锁
        """
        while True:
            projected = profile.with_reward(reward, now)
            badges, achievements, extra = self.achievements.evaluate(projected)
            if not badges and not achievements:
                return reward
            reward.badges.extend(b for b in badges if b not in reward.badges)
            reward.achievements.extend(achievements)
            reward.points += extra
