"""
积分与等级测试
"""

from datetime import datetime, timedelta

import pytest

from ecoquest.core.profile import Profile, level_for_points, level_progress, rank_for
from ecoquest.storage.models import Difficulty
from ecoquest.system.points import (
    PointsContext, RewardCalculator, compute_penalty, compute_points, level_multiplier,
    milestone_bonus, streak_multiplier, time_of_day_for,
)

NOW = datetime(2024, 1, 1, 12, 0)


class TestComputePoints:

    def test_all_multipliers(self):
        context = PointsContext(level=10, streak=7, time_of_day="peak", difficulty=Difficulty.MEDIUM)
        # 15 × 1.2 × 1.5 × 2.0 × 1.3
        assert compute_points("turnOffAppliance", context) == 70

    def test_defaults(self):
        assert compute_points("ledBulbUpgrade", PointsContext()) == 195

    def test_unknown_action(self):
        with pytest.raises(KeyError):
            compute_points("danceParty", PointsContext())

    def test_unknown_time_of_day_is_neutral(self):
        assert compute_points("helpNeighbor", PointsContext(time_of_day="dawn")) == 50

    @pytest.mark.parametrize("level,expected", [(1, 1.0), (4, 1.0), (5, 1.1), (12, 1.2), (31, 2.0)])
    def test_level_multiplier(self, level, expected):
        assert level_multiplier(level) == expected

    @pytest.mark.parametrize("streak,expected", [(0, 1.0), (2, 1.0), (3, 1.2), (29, 1.8), (400, 3.0)])
    def test_streak_multiplier(self, streak, expected):
        assert streak_multiplier(streak) == expected

    @pytest.mark.parametrize("hour,expected", [
        (7, "peak"), (18, "peak"), (12, "offPeak"), (22, "offPeak"), (23, "superOffPeak"), (3, "superOffPeak"),
    ])
    def test_time_of_day(self, hour, expected):
        assert time_of_day_for(NOW.replace(hour=hour)) == expected

    def test_penalties(self):
        assert compute_penalty("missedTarget", 2) == -100
        assert compute_penalty("highConsumption") == -30
        with pytest.raises(KeyError):
            compute_penalty("jaywalking")

    def test_milestone_bonus(self):
        assert [milestone_bonus(m) for m in (25, 50, 75)] == [10, 20, 30]


class TestLevels:

    def test_level_for_points(self):
        assert level_for_points(0) == 1
        assert level_for_points(999) == 1
        assert level_for_points(1000) == 2
        assert level_for_points(-50) == 1

    def test_level_progress(self):
        progress = level_progress(2350)
        assert progress == {
            "level": 3, "points_into_level": 350, "next_level_at": 3000, "percentage": 35.0,
        }

    def test_rank(self):
        rank = rank_for(7500)
        assert rank["title"] == "Smart Saver"
        assert rank["next_title"] == "Efficiency Expert"
        assert rank["points_to_next"] == 12500
        assert rank["progress"] == 0.0

    def test_top_rank(self):
        rank = rank_for(1_000_000)
        assert rank["title"] == "Sustainability Legend"
        assert rank["next_title"] is None
        assert rank["progress"] == 100.0


class TestRewardCalculator:

    @pytest.fixture
    def quest(self, make_ac_quest, clock):
        async def build():
            quest = await make_ac_quest()
            quest.started_at = clock.now()
            return quest
        return build

    async def test_time_bonus(self, quest, clock):
        q = await quest()
        calculator = RewardCalculator()
        assert calculator.time_bonus(q, clock.now() + timedelta(hours=100)) == 1.2
        assert calculator.time_bonus(q, clock.now() + timedelta(hours=150)) == 1.0

    async def test_completion_reward(self, quest, clock):
        q = await quest()
        reward = RewardCalculator().quest_reward(q, Profile("u1"), NOW)
        assert reward.id == f"{q.id}:completion"
        assert reward.completes_quest
        # 472×1.2 + 周任务 200×1.3 + 首次完成成就 100
        assert reward.points == 566 + 260 + 100
        assert reward.achievements == ["first_save"]
        assert "eco_starter" in reward.badges

    async def test_milestone_reward_id(self, quest):
        q = await quest()
        reward = RewardCalculator().milestone_reward(q, 50, Profile("u1"), NOW)
        assert reward.id == f"{q.id}:milestone:50"
        assert reward.points == 20
        assert not reward.completes_quest

    async def test_achievement_bonus_unlocks_further_thresholds(self, quest):
        q = await quest()
        profile = Profile(
            "u1", points=5500, total_points=5500, level=6,
            badges=["eco_starter", "kwh_10", "kwh_100", "level_5"],
            achievements=["first_save"], quests_completed=1, energy_saved_kwh=1000.0,
        )
        reward = RewardCalculator().milestone_reward(q, 25, profile, NOW)
        # 传奇节能 +5000 -> 累计 10510，跨过积分收藏家与 10 级门槛
        assert reward.achievements == ["legendary_saver", "point_collector"]
        assert reward.badges == ["level_10"]
        assert reward.points == 10 + 5000 + 1000
