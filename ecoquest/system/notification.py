"""
通知引擎
把任务与奖励事件转成面向用户的通知，按用户缓存给 Web UI / WebSocket
"""

import logging
from collections import defaultdict
from datetime import datetime

from ..core.config import NotificationConfig
from ..core.events import Event, EventBus, EventType

logger = logging.getLogger(__name__)

STYLE_ICONS = {
    "quest": "⚔️", "milestone": "🎯", "reward": "⭐", "levelup": "🎉",
    "badge": "🏅", "warning": "⚠️", "info": "ℹ️",
}


class NotificationEngine:
    """通知引擎"""

    def __init__(self, config: NotificationConfig, event_bus: EventBus):
        self.config = config
        self.bus = event_bus
        self._pending: dict[str, list[dict]] = defaultdict(list)
        self._register_handlers()

    def _register_handlers(self):
        self.bus.on(EventType.QUESTS_GENERATED, self._on_quests_generated)
        self.bus.on(EventType.QUEST_STARTED, self._on_quest_started)
        self.bus.on(EventType.QUEST_MILESTONE, self._on_quest_milestone)
        self.bus.on(EventType.QUEST_COMPLETED, self._on_quest_completed)
        self.bus.on(EventType.QUEST_EXPIRED, self._on_quest_expired)
        self.bus.on(EventType.QUEST_FAILED, self._on_quest_failed)
        self.bus.on(EventType.LEVEL_UP, self._on_level_up)
        self.bus.on(EventType.BADGE_UNLOCKED, self._on_badge_unlocked)
        self.bus.on(EventType.ACHIEVEMENT_UNLOCKED, self._on_achievement_unlocked)

    async def push(self, user_id: str, title: str, message: str, style: str = "info") -> None:
        """推送通知"""
        if not self.config.enabled:
            return

        notification = {
            "user_id": user_id,
            "title": title,
            "message": message,
            "style": style,
            "icon": STYLE_ICONS.get(style, "📢"),
            "timestamp": datetime.now().isoformat(),
        }
        pending = self._pending[user_id]
        pending.append(notification)
        if len(pending) > self.config.max_pending:
            del pending[:-self.config.max_pending]

        logger.info("[%s] %s: %s", user_id, title, message)
        await self.bus.emit_simple(EventType.NOTIFICATION_PUSH, notification=notification)

    def pop_pending(self, user_id: str) -> list[dict]:
        """获取并清空待推送通知"""
        return self._pending.pop(user_id, [])

    def peek(self, user_id: str) -> list[dict]:
        return list(self._pending.get(user_id, []))

    # ── 事件处理 ──────────────────────────────────────

    async def _on_quests_generated(self, event: Event) -> None:
        quests = event.data.get("quests", [])
        titles = ", ".join(q["title"] for q in quests)
        await self.push(event.data["user_id"], "New quests available", titles, style="quest")

    async def _on_quest_started(self, event: Event) -> None:
        await self.push(
            event.data["user_id"],
            "Quest accepted",
            f"{event.data.get('quest_title', '')} (until {event.data.get('valid_until', '?')})",
            style="quest",
        )

    async def _on_quest_milestone(self, event: Event) -> None:
        await self.push(
            event.data["user_id"],
            f"{event.data['milestone']}% reached",
            event.data.get("quest_title", ""),
            style="milestone",
        )

    async def _on_quest_completed(self, event: Event) -> None:
        await self.push(
            event.data["user_id"],
            "Quest complete!",
            f"✅ {event.data.get('quest_title', '')}: +{event.data.get('points_earned', 0)} points",
            style="reward",
        )

    async def _on_quest_expired(self, event: Event) -> None:
        await self.push(
            event.data["user_id"],
            "Quest expired",
            f"{event.data.get('quest_title', '')} ended at {event.data.get('percentage', 0):.0f}%",
            style="warning",
        )

    async def _on_quest_failed(self, event: Event) -> None:
        await self.push(
            event.data["user_id"], "Quest abandoned", event.data.get("quest_title", ""), style="warning",
        )

    async def _on_level_up(self, event: Event) -> None:
        await self.push(
            event.data["user_id"],
            f"Level {event.data['new_level']}!",
            f"Rank: {event.data.get('rank', '')}",
            style="levelup",
        )

    async def _on_badge_unlocked(self, event: Event) -> None:
        await self.push(event.data["user_id"], "Badge unlocked", event.data["badge"], style="badge")

    async def _on_achievement_unlocked(self, event: Event) -> None:
        await self.push(
            event.data["user_id"], "Achievement unlocked", event.data["achievement"], style="badge",
        )
