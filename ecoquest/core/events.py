"""
事件总线 - 引擎内部通信
读数接入、任务生命周期、奖励结算都通过事件总线松耦合
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)


class EventType(Enum):
    # 感知层事件
    READING_RECEIVED = "reading_received"
    SESSION_OPENED = "session_opened"
    SESSION_CLOSED = "session_closed"

    # 认知层事件
    SNAPSHOT_BUILT = "snapshot_built"

    # 任务事件
    QUESTS_GENERATED = "quests_generated"
    QUEST_STARTED = "quest_started"
    QUEST_PROGRESS = "quest_progress"
    QUEST_MILESTONE = "quest_milestone"
    QUEST_COMPLETED = "quest_completed"
    QUEST_EXPIRED = "quest_expired"
    QUEST_FAILED = "quest_failed"

    # 奖励事件
    REWARD_APPLIED = "reward_applied"
    POINTS_GAINED = "points_gained"
    LEVEL_UP = "level_up"
    BADGE_UNLOCKED = "badge_unlocked"
    ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
    ITEM_REDEEMED = "item_redeemed"

    # 通知事件
    NOTIFICATION_PUSH = "notification_push"

    # 系统生命周期
    SYSTEM_START = "system_start"
    SYSTEM_STOP = "system_stop"
    SYSTEM_TICK = "system_tick"


@dataclass
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    source: str = "system"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


# 事件处理器类型
EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


class EventBus:
    """异步事件总线"""

    def __init__(self, max_history: int = 1000):
        self._handlers: dict[EventType, list[EventHandler]] = defaultdict(list)
        self._history: list[Event] = []
        self._max_history = max_history

    def on(self, event_type: EventType, handler: EventHandler) -> None:
        """注册事件处理器"""
        self._handlers[event_type].append(handler)

    def off(self, event_type: EventType, handler: EventHandler) -> None:
        """移除事件处理器"""
        if handler in self._handlers[event_type]:
            self._handlers[event_type].remove(handler)

    async def emit(self, event: Event) -> None:
        """触发事件，通知所有注册的处理器；处理器异常只记录不外抛"""
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event.type, []))
        if not handlers:
            return
        results = await asyncio.gather(
            *(handler(event) for handler in handlers),
            return_exceptions=True,
        )
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    "handler %s failed on %s: %r",
                    getattr(handler, "__qualname__", handler), event.type.value, result,
                )

    async def emit_simple(self, event_type: EventType, source: str = "system", **data) -> None:
        """简便触发事件"""
        await self.emit(Event(type=event_type, data=data, source=source))

    def get_history(
        self,
        event_type: EventType | None = None,
        limit: int = 50,
    ) -> list[Event]:
        """获取事件历史"""
        if event_type:
            filtered = [e for e in self._history if e.type == event_type]
        else:
            filtered = self._history
        return filtered[-limit:]
