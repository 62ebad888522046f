"""
任务统计报告
汇总用户的任务完成情况、节电量与偏好类别
"""

from collections import Counter
from datetime import datetime

from ..core.profile import Profile, rank_for
from ..storage.models import Quest, QuestStatus


class ReportGenerator:
    """用户报告生成器"""

    def __init__(self, db):
        self.db = db

    async def generate_user_report(self, profile: Profile) -> dict:
        quests = await self.db.get_user_quests(profile.user_id)
        stats = self.quest_stats(quests)
        rank = rank_for(profile.total_points)

        summary_lines = [
            f"📊 **EcoQuest report** | {datetime.now().strftime('%Y-%m-%d')}",
            "",
            f"⚡ **{profile.user_id}** Lv.{profile.level} [{rank['title']}]",
            f"⭐ **Points**: {profile.points} spendable / {profile.total_points} total",
            f"🔥 **Streak**: {profile.streak_days} days",
            "",
            f"🎯 **Quests**: {stats['completed']} completed, {stats['active']} active, "
            f"{stats['expired'] + stats['failed']} missed",
            f"   Success rate: {stats['success_rate']}%",
            f"🔋 **Energy saved**: {profile.energy_saved_kwh:.1f} kWh",
        ]
        if stats["favorite_category"]:
            summary_lines.append(f"❤️ **Favourite category**: {stats['favorite_category']}")
        if profile.badges:
            summary_lines.append("")
            summary_lines.append(f"🏅 **Badges**: {', '.join(profile.badges)}")

        return {
            "summary": "\n".join(summary_lines),
            "details": {**stats, "level": profile.level, "rank": rank["title"]},
        }

    def quest_stats(self, quests: list[Quest]) -> dict:
        by_status = Counter(q.status for q in quests)
        completed = [q for q in quests if q.status == QuestStatus.COMPLETED]
        finished = by_status[QuestStatus.COMPLETED] + by_status[QuestStatus.EXPIRED] + by_status[QuestStatus.FAILED]
        categories = Counter(q.category.value for q in completed)
        favorite = categories.most_common(1)[0][0] if categories else None
        return {
            "total": len(quests),
            "completed": by_status[QuestStatus.COMPLETED],
            "active": by_status[QuestStatus.ACTIVE],
            "available": by_status[QuestStatus.AVAILABLE],
            "expired": by_status[QuestStatus.EXPIRED],
            "failed": by_status[QuestStatus.FAILED],
            "success_rate": round(by_status[QuestStatus.COMPLETED] / finished * 100) if finished else 0,
            "favorite_category": favorite,
            "energy_saved_kwh": round(sum(q.savings.energy_kwh for q in completed), 2),
            "cost_saved": round(sum(q.savings.cost for q in completed), 2),
            "carbon_saved_kg": round(sum(q.savings.carbon_kg for q in completed), 2),
        }
