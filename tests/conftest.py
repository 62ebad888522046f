"""
测试夹具
内存数据库、手动时钟、事件总线，以及构造读数与任务的工厂
"""

from datetime import datetime

import pytest
import pytest_asyncio

from ecoquest.core.config import QuestsConfig
from ecoquest.core.events import EventBus
from ecoquest.core.profile import ProfileManager
from ecoquest.core.scheduler import ManualClock
from ecoquest.storage.database import Database
from ecoquest.storage.models import (
    DeviceReading, DeviceUsage, Opportunity, OpportunityContext, Reading, UsageSnapshot,
)
from ecoquest.system.instantiator import QuestInstantiator
from ecoquest.system.quest_engine import QuestEngine
from ecoquest.system.templates import TemplateRegistry

START = datetime(2024, 1, 1, 8, 0)


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def registry():
    return TemplateRegistry()


@pytest_asyncio.fixture
async def db():
    database = Database(":memory:")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def profiles(db, bus, clock):
    return ProfileManager(db, bus, clock)


@pytest.fixture
def quests_config():
    return QuestsConfig(auto_generate=False)


@pytest.fixture
def engine(db, profiles, bus, clock, quests_config, registry):
    return QuestEngine(db, profiles, bus, config=quests_config, clock=clock, registry=registry)


@pytest.fixture
def snapshot():
    """高耗电设备 + 能效偏低 + 总量偏高"""
    return UsageSnapshot(
        devices=[
            DeviceUsage("geyser", "Water Heater", "appliance", 7.5),
            DeviceUsage("fridge", "Fridge", "appliance", 3.0),
        ],
        peak_usage_time="14:00",
        total_consumption=22.0,
        efficiency_score=6.5,
    )


@pytest.fixture
def make_reading():
    def factory(
        timestamp: datetime,
        power_kw: float = 1.0,
        energy_kwh: float = 0.0,
        power_factor: float = 0.9,
        ac_setpoint: float | None = None,
        light_kw: float | None = None,
    ) -> Reading:
        devices = {}
        if ac_setpoint is not None:
            devices["ac1"] = DeviceReading("ac", 1.2, 0.0, setpoint=ac_setpoint, name="Bedroom AC")
        if light_kw is not None:
            devices["light1"] = DeviceReading("light", light_kw, 0.0, name="Hall Light")
        return Reading(
            timestamp=timestamp,
            power_kw=power_kw,
            energy_kwh=energy_kwh,
            power_factor=power_factor,
            meter_id="m1",
            devices=devices,
        )

    return factory


@pytest.fixture
def make_quest(db, registry, clock):
    """按模板实例化一个可接受的任务并写库"""
    instantiator = QuestInstantiator()

    async def factory(template_id: str, user_id: str = "u1", potential: float = 5.0, **context):
        template = registry.get(template_id)
        defaults = {"consumption": 22.0, "efficiency_score": 6.5, "peak_time": "19:00"}
        defaults.update(context)
        opportunity = Opportunity(
            template_id=template_id,
            priority=template.priority,
            potential=potential,
            context=OpportunityContext(**defaults),
        )
        quest = instantiator.instantiate(template, opportunity, user_id, clock.now())
        await db.save_quest(quest)
        return quest

    return factory


@pytest.fixture
def make_ac_quest(make_quest):
    async def factory(user_id: str = "u1"):
        return await make_quest(
            "ac-temperature-optimization",
            user_id=user_id,
            potential=9.5,
            device_id="ac1",
            device_name="Bedroom AC",
            device_type="ac",
            device_usage=9.5,
            setpoint=22.0,
        )

    return factory
