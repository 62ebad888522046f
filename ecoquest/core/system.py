"""
EcoQuest - 主系统
串联遥测、任务引擎、奖励与通知，并提供 Web 服务
"""

import asyncio
import logging
from datetime import datetime

import uvicorn

from .config import Config, load_config
from .events import EventBus
from .profile import ProfileManager
from .scheduler import SystemClock
from ..api.server import create_app
from ..perception.meter_feed import SimulatedMeter, TelemetryFeed
from ..storage.database import Database
from ..system.achievement import AchievementEngine
from ..system.notification import NotificationEngine
from ..system.points import RewardCalculator
from ..system.quest_engine import QuestEngine
from ..system.report import ReportGenerator
from ..system.shop import RewardsShop

logger = logging.getLogger(__name__)


def setup_logging(config: Config) -> None:
    logging.basicConfig(level=config.logging.level.upper(), format=config.logging.format)


class EcoQuestSystem:
    """EcoQuest 系统核心"""

    def __init__(self, config: Config | None = None, clock=None):
        self.config = config or load_config()
        self.clock = clock or SystemClock()
        self.bus = EventBus()
        self.running = False
        self.start_time: datetime | None = None

        self.db = Database(self.config.storage.database)
        self.profiles = ProfileManager(self.db, self.bus, self.clock)

        # 遥测
        self.feed = TelemetryFeed()
        self.meter = SimulatedMeter(self.feed, self.config.simulation, self.clock)

        # 任务与奖励
        self.achievements = AchievementEngine()
        self.quest_engine = QuestEngine(
            self.db,
            self.profiles,
            self.bus,
            config=self.config.quests,
            feed=self.feed,
            clock=self.clock,
            rewards=RewardCalculator(self.achievements),
        )
        self.notifications = NotificationEngine(self.config.notification, self.bus)
        self.shop = RewardsShop(self.profiles, self.bus)
        self.reports = ReportGenerator(self.db)

        self.app = create_app(self)

    async def startup(self, run_cycles: bool = True) -> None:
        """连接存储并启动引擎"""
        if self.running:
            return
        await self.db.connect()
        await self.quest_engine.start(run_cycles=run_cycles)

        if self.config.simulation.enabled:
            for user_id in self.config.simulation.users:
                await self.quest_engine.open_session(user_id)
                await self.quest_engine.generate_quests_for_user(user_id)
            await self.meter.start()

        self.running = True
        self.start_time = datetime.now()
        logger.info("%s v%s started", self.config.system.name, self.config.system.version)

    async def shutdown(self) -> None:
        """停止系统"""
        if not self.running:
            return
        self.running = False
        await self.meter.stop()
        await self.quest_engine.stop()
        await self.db.close()
        logger.info("%s stopped", self.config.system.name)

    async def serve(self) -> None:
        """启动 Web 服务；应用生命周期负责启停系统"""
        if not self.config.web.enabled:
            await self.startup()
            try:
                await asyncio.Event().wait()
            finally:
                await self.shutdown()
            return

        logger.info("web panel on http://%s:%d", self.config.web.host, self.config.web.port)
        config = uvicorn.Config(
            self.app,
            host=self.config.web.host,
            port=self.config.web.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()


async def main():
    """入口"""
    config = load_config()
    setup_logging(config)
    system = EcoQuestSystem(config)
    try:
        await system.serve()
    except Exception:
        logger.exception("fatal error")
        await system.shutdown()
        raise


if __name__ == "__main__":
    asyncio.run(main())
