"""
SQLite 数据库管理
异步 SQLite 操作，存储任务、用户档案、活动日志
"""

import json
import aiosqlite
from pathlib import Path
from datetime import datetime
from typing import Any

from ..core.errors import StoreUnavailable
from .models import (
    Difficulty, Quest, QuestCategory, QuestProgress, QuestStatus, QuestType,
    SavingsEstimate, objective_from_dict,
)


class Database:
    """异步 SQLite 数据库"""

    def __init__(self, db_path: str = "data/ecoquest.db"):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """连接数据库并初始化表"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._init_tables()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _write(self, sql: str, params: tuple | list) -> None:
        """执行写操作并提交；连接不可用或写入失败时抛出 StoreUnavailable"""
        if self._db is None:
            raise StoreUnavailable("database not connected")
        try:
            await self._db.execute(sql, params)
            await self._db.commit()
        except aiosqlite.Error as e:
            raise StoreUnavailable(str(e)) from e

    async def _init_tables(self) -> None:
        """创建数据库表"""
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS profiles (
                user_id TEXT PRIMARY KEY,
                points INTEGER DEFAULT 0,
                total_points INTEGER DEFAULT 0,
                level INTEGER DEFAULT 1,
                badges_json TEXT DEFAULT '[]',
                achievements_json TEXT DEFAULT '[]',
                quests_completed INTEGER DEFAULT 0,
                completed_templates_json TEXT DEFAULT '[]',
                streak_days INTEGER DEFAULT 0,
                last_completion_day TEXT,
                energy_saved_kwh REAL DEFAULT 0,
                community_help INTEGER DEFAULT 0,
                applied_rewards_json TEXT DEFAULT '[]',
                redeemed_json TEXT DEFAULT '[]',
                created_at TEXT,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS quests (
                id TEXT PRIMARY KEY,
                template_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                category TEXT NOT NULL,
                difficulty TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                objectives_json TEXT DEFAULT '[]',
                baseline REAL DEFAULT 0,
                target REAL DEFAULT 0,
                current REAL DEFAULT 0,
                unit TEXT DEFAULT '',
                percentage REAL DEFAULT 0,
                status TEXT DEFAULT 'available',
                milestones_json TEXT DEFAULT '[]',
                streak INTEGER DEFAULT 0,
                last_activity TEXT,
                reward_points INTEGER DEFAULT 0,
                bonus_points INTEGER DEFAULT 0,
                badges_json TEXT DEFAULT '[]',
                savings_json TEXT DEFAULT '{}',
                icon TEXT DEFAULT '',
                created_at TEXT,
                valid_from TEXT,
                started_at TEXT,
                valid_until TEXT,
                completed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_quests_user_status ON quests (user_id, status);

            CREATE TABLE IF NOT EXISTS activity_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                event_type TEXT NOT NULL,
                user_id TEXT,
                data_json TEXT DEFAULT '{}'
            );
        """)
        await self._db.commit()

    # ── Profiles ──────────────────────────────────────

    async def save_profile(self, profile: dict[str, Any]) -> None:
        """保存用户档案"""
        now = datetime.now().isoformat()
        await self._write("""
            INSERT OR REPLACE INTO profiles
            (user_id, points, total_points, level, badges_json, achievements_json,
             quests_completed, completed_templates_json, streak_days,
             last_completion_day, energy_saved_kwh, community_help,
             applied_rewards_json, redeemed_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, COALESCE(
                (SELECT created_at FROM profiles WHERE user_id=?), ?
            ), ?)
        """, (
            profile["user_id"],
            profile["points"],
            profile["total_points"],
            profile["level"],
            json.dumps(profile["badges"]),
            json.dumps(profile["achievements"]),
            profile["quests_completed"],
            json.dumps(profile["completed_templates"]),
            profile["streak_days"],
            profile["last_completion_day"],
            profile["energy_saved_kwh"],
            profile["community_help"],
            json.dumps(profile["applied_rewards"]),
            json.dumps(profile["redeemed"]),
            profile["user_id"], now, now,
        ))

    async def load_profile(self, user_id: str) -> dict[str, Any] | None:
        """加载用户档案"""
        async with self._db.execute(
            "SELECT * FROM profiles WHERE user_id=?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if not row:
                return None
            return {
                "user_id": row["user_id"],
                "points": row["points"],
                "total_points": row["total_points"],
                "level": row["level"],
                "badges": json.loads(row["badges_json"]),
                "achievements": json.loads(row["achievements_json"]),
                "quests_completed": row["quests_completed"],
                "completed_templates": json.loads(row["completed_templates_json"]),
                "streak_days": row["streak_days"],
                "last_completion_day": row["last_completion_day"],
                "energy_saved_kwh": row["energy_saved_kwh"],
                "community_help": row["community_help"],
                "applied_rewards": json.loads(row["applied_rewards_json"]),
                "redeemed": json.loads(row["redeemed_json"]),
            }

    # ── Quests ────────────────────────────────────────

    async def save_quest(self, quest: Quest) -> None:
        """保存任务 (整条记录替换，不做部分更新)"""
        await self._write("""
            INSERT OR REPLACE INTO quests
            (id, template_id, user_id, type, category, difficulty, title,
             description, objectives_json, baseline, target, current, unit,
             percentage, status, milestones_json, streak, last_activity,
             reward_points, bonus_points, badges_json, savings_json, icon,
             created_at, valid_from, started_at, valid_until, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                    ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            quest.id, quest.template_id, quest.user_id, quest.type.value,
            quest.category.value, quest.difficulty.value, quest.title,
            quest.description,
            json.dumps([o.to_dict() for o in quest.objectives]),
            quest.baseline, quest.target, quest.current, quest.unit,
            quest.progress.percentage, quest.progress.status.value,
            json.dumps(quest.progress.milestones_awarded), quest.progress.streak,
            _iso(quest.progress.last_activity),
            quest.reward_points, quest.bonus_points,
            json.dumps(quest.badges), json.dumps(quest.savings.to_dict()),
            quest.icon,
            _iso(quest.created_at), _iso(quest.valid_from), _iso(quest.started_at),
            _iso(quest.valid_until), _iso(quest.completed_at),
        ))

    async def get_quest(self, quest_id: str) -> Quest | None:
        async with self._db.execute(
            "SELECT * FROM quests WHERE id=?", (quest_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_quest(row) if row else None

    async def delete_quest(self, quest_id: str) -> None:
        await self._write("DELETE FROM quests WHERE id=?", (quest_id,))

    async def get_user_quests(
        self,
        user_id: str,
        statuses: list[QuestStatus] | None = None,
    ) -> list[Quest]:
        """获取某用户的任务，可按状态过滤"""
        sql = "SELECT * FROM quests WHERE user_id=?"
        params: list[Any] = [user_id]
        if statuses:
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        sql += " ORDER BY created_at, id"
        async with self._db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_quest(row) for row in rows]

    async def get_active_quests(self, user_id: str) -> list[Quest]:
        """获取用户所有进行中的任务"""
        return await self.get_user_quests(user_id, [QuestStatus.ACTIVE])

    async def get_quests_expiring_before(self, moment: datetime) -> list[Quest]:
        """获取有效期在 moment 之前结束、尚未终结的任务"""
        async with self._db.execute(
            "SELECT * FROM quests WHERE status IN ('available', 'active') "
            "AND valid_until < ? ORDER BY valid_until",
            (moment.isoformat(),),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_quest(row) for row in rows]

    def _row_to_quest(self, row) -> Quest:
        return Quest(
            id=row["id"],
            template_id=row["template_id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"] or "",
            type=QuestType(row["type"]),
            category=QuestCategory(row["category"]),
            difficulty=Difficulty(row["difficulty"]),
            objectives=[objective_from_dict(o) for o in json.loads(row["objectives_json"])],
            baseline=row["baseline"],
            target=row["target"],
            unit=row["unit"] or "",
            reward_points=row["reward_points"],
            bonus_points=row["bonus_points"],
            badges=json.loads(row["badges_json"]),
            savings=SavingsEstimate(**json.loads(row["savings_json"])),
            icon=row["icon"] or "",
            created_at=_dt(row["created_at"]),
            valid_from=_dt(row["valid_from"]),
            started_at=_dt(row["started_at"]),
            valid_until=_dt(row["valid_until"]),
            completed_at=_dt(row["completed_at"]),
            progress=QuestProgress(
                status=QuestStatus(row["status"]),
                percentage=row["percentage"],
                milestones_awarded=json.loads(row["milestones_json"]),
                last_activity=_dt(row["last_activity"]),
                streak=row["streak"],
            ),
        )

    # ── Activity Log ──────────────────────────────────

    async def log_activity(
        self,
        event_type: str,
        data: dict[str, Any],
        user_id: str | None = None,
    ) -> None:
        """记录活动日志"""
        await self._write(
            "INSERT INTO activity_log (timestamp, event_type, user_id, data_json) "
            "VALUES (?, ?, ?, ?)",
            (datetime.now().isoformat(), event_type, user_id, json.dumps(data, default=str)),
        )

    async def get_activity(self, user_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        sql = "SELECT * FROM activity_log"
        params: list[Any] = []
        if user_id:
            sql += " WHERE user_id=?"
            params.append(user_id)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        async with self._db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
            return [
                {
                    "timestamp": row["timestamp"],
                    "event_type": row["event_type"],
                    "user_id": row["user_id"],
                    "data": json.loads(row["data_json"]),
                }
                for row in rows
            ]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
