"""
徽章与成就系统
每项都有数值门槛，全部满足的瞬间解锁，只解锁一次
"""

from typing import Any

from ..core.profile import Profile


# 成就定义 (解锁时额外奖励积分)
ACHIEVEMENTS: dict[str, dict[str, Any]] = {
    "first_save": {
        "name": "🌱 First Save",
        "description": "Complete your first energy-saving quest",
        "requirements": {"quests_completed": 1},
        "points": 100,
        "rarity": "common",
    },
    "week_warrior": {
        "name": "⚔️ Week Warrior",
        "description": "Complete quests 7 days in a row",
        "requirements": {"streak": 7},
        "points": 500,
        "rarity": "rare",
    },
    "point_collector": {
        "name": "💰 Point Collector",
        "description": "Earn 10,000 points in total",
        "requirements": {"points": 10000},
        "points": 1000,
        "rarity": "epic",
    },
    "efficiency_master": {
        "name": "⚡ Efficiency Master",
        "description": "Complete 25 quests and save 100 kWh",
        "requirements": {"quests_completed": 25, "energy_saved": 100},
        "points": 750,
        "rarity": "epic",
    },
    "community_hero": {
        "name": "🤝 Community Hero",
        "description": "Help the community 50 times",
        "requirements": {"community_help": 50},
        "points": 1500,
        "rarity": "legendary",
    },
    "legendary_saver": {
        "name": "👑 Legendary Saver",
        "description": "Save 1,000 kWh",
        "requirements": {"energy_saved": 1000},
        "points": 5000,
        "rarity": "legendary",
    },
}

# 徽章定义 (纯荣誉)
BADGES: dict[str, dict[str, Any]] = {
    "eco_starter": {"name": "🌿 Eco Starter", "requirements": {"quests_completed": 1}},
    "quest_10": {"name": "🎯 Quest Hunter", "requirements": {"quests_completed": 10}},
    "streak_3": {"name": "🔥 On Fire", "requirements": {"streak": 3}},
    "kwh_10": {"name": "🔋 10 kWh Saved", "requirements": {"energy_saved": 10}},
    "kwh_100": {"name": "⚡ 100 kWh Saved", "requirements": {"energy_saved": 100}},
    "level_5": {"name": "⬆️ Level 5", "requirements": {"level": 5}},
    "level_10": {"name": "⬆️ Level 10", "requirements": {"level": 10}},
}


def _metric(profile: Profile, key: str) -> float:
    return {
        "quests_completed": profile.quests_completed,
        "streak": profile.streak_days,
        "points": profile.total_points,
        "energy_saved": profile.energy_saved_kwh,
        "community_help": profile.community_help,
        "level": profile.level,
    }[key]


def _satisfied(profile: Profile, requirements: dict[str, float]) -> bool:
    return all(_metric(profile, key) >= value for key, value in requirements.items())


class AchievementEngine:
    """徽章/成就判定"""

    def evaluate(self, profile: Profile) -> tuple[list[str], list[str], int]:
        """返回 (新徽章, 新成就, 成就奖励积分)"""
        badges = [
            badge_id for badge_id, badge in BADGES.items()
            if badge_id not in profile.badges and _satisfied(profile, badge["requirements"])
        ]
        achievements = [
            ach_id for ach_id, ach in ACHIEVEMENTS.items()
            if ach_id not in profile.achievements and _satisfied(profile, ach["requirements"])
        ]
        points = sum(ACHIEVEMENTS[a]["points"] for a in achievements)
        return badges, achievements, points

    def get_all(self, profile: Profile) -> list[dict[str, Any]]:
        """获取所有成就及解锁进度"""
        result = []
        for ach_id, ach in ACHIEVEMENTS.items():
            progress = min(
                _metric(profile, key) / value for key, value in ach["requirements"].items()
            )
            result.append({
                "id": ach_id,
                "name": ach["name"],
                "description": ach["description"],
                "rarity": ach["rarity"],
                "points": ach["points"],
                "unlocked": ach_id in profile.achievements,
                "progress": round(min(progress, 1.0) * 100, 1),
            })
        return result

    def get_badges(self, profile: Profile) -> list[dict[str, Any]]:
        badges = [
            {"id": badge_id, "name": badge["name"], "unlocked": badge_id in profile.badges}
            for badge_id, badge in BADGES.items()
        ]
        # 任务奖励的徽章不在固定表里
        badges.extend(
            {"id": badge_id, "name": badge_id, "unlocked": True}
            for badge_id in profile.badges if badge_id not in BADGES
        )
        return badges
