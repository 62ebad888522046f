"""
外部协作方接口
引擎只通过这些窄接口访问遥测、用户档案和任务存储
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol

from ..storage.models import Quest, QuestStatus, Reading, RewardResult
from .profile import Profile

ReadingCallback = Callable[[Reading], Awaitable[None]]
Unsubscribe = Callable[[], None]


class TelemetryFeed(Protocol):
    def subscribe(self, user_id: str, callback: ReadingCallback) -> Unsubscribe: ...


class ProfileStore(Protocol):
    async def get_profile(self, user_id: str) -> Profile: ...

    async def get_level(self, user_id: str) -> int: ...

    async def apply_reward(self, reward: RewardResult) -> bool: ...

    async def get_completed_quest_ids(self, user_id: str) -> set[str]: ...


class QuestStore(Protocol):
    async def save_quest(self, quest: Quest) -> None: ...

    async def get_quest(self, quest_id: str) -> Quest | None: ...

    async def delete_quest(self, quest_id: str) -> None: ...

    async def get_user_quests(
        self, user_id: str, statuses: list[QuestStatus] | None = None,
    ) -> list[Quest]: ...

    async def get_active_quests(self, user_id: str) -> list[Quest]: ...

    async def get_quests_expiring_before(self, moment: datetime) -> list[Quest]: ...

    async def log_activity(
        self, event_type: str, data: dict[str, Any], user_id: str | None = None,
    ) -> None: ...
