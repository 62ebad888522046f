"""
遥测源
内存中的读数发布/订阅，以及用于演示的模拟电表
"""

import asyncio
import logging
import random
from collections import defaultdict
from datetime import datetime

from ..core.config import SimulationConfig
from ..core.interfaces import ReadingCallback, Unsubscribe
from ..core.scheduler import SystemClock
from ..storage.models import DeviceReading, Reading

logger = logging.getLogger(__name__)


class TelemetryFeed:
    """按用户分发读数"""

    def __init__(self):
        self._subscribers: dict[str, list[ReadingCallback]] = defaultdict(list)

    def subscribe(self, user_id: str, callback: ReadingCallback) -> Unsubscribe:
        self._subscribers[user_id].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers.get(user_id, []):
                self._subscribers[user_id].remove(callback)

        return unsubscribe

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, ()))

    async def publish(self, user_id: str, reading: Reading) -> int:
        """推送读数，返回送达的订阅者数"""
        delivered = 0
        for callback in list(self._subscribers.get(user_id, [])):
            try:
                await callback(reading)
                delivered += 1
            except Exception:
                logger.exception("subscriber failed for %s", user_id)
        return delivered


# 设备 id -> (类型, 名称, 额定功率 kW)
SIMULATED_DEVICES = {
    "ac_bedroom": ("ac", "Bedroom AC", 1.4),
    "fridge": ("appliance", "Fridge", 0.15),
    "geyser": ("appliance", "Water Heater", 2.0),
    "light_hall": ("light", "Hall Light", 0.04),
    "light_kitchen": ("light", "Kitchen Light", 0.03),
    "light_bedroom": ("light", "Bedroom Light", 0.03),
}

# 每小时设备开启概率
HOURLY_LOAD = [0.2] * 6 + [0.6] * 4 + [0.3] * 7 + [0.8] * 5 + [0.4] * 2


class SimulatedMeter:
    """模拟电表：周期性为每个用户生成读数并发布"""

    def __init__(self, feed: TelemetryFeed, config: SimulationConfig, clock=None):
        self.feed = feed
        self.config = config
        self.clock = clock or SystemClock()
        self._rng = random.Random(config.seed)
        self._state: dict[str, dict] = {}
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("simulated meter started for %s", ", ".join(self.config.users))

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            for user_id in self.config.users:
                try:
                    await self.feed.publish(user_id, self.next_reading(user_id))
                except Exception:
                    logger.exception("simulated reading failed for %s", user_id)
            await asyncio.sleep(self.config.interval)

    def next_reading(self, user_id: str, at: datetime | None = None) -> Reading:
        now = at or self.clock.now()
        state = self._state.setdefault(user_id, {
            "at": now,
            "energy": 0.0,
            "devices": {device_id: 0.0 for device_id in SIMULATED_DEVICES},
        })
        hours = max(0.0, (now - state["at"]).total_seconds() / 3600)
        load = HOURLY_LOAD[now.hour]

        devices = {}
        total_power = 0.0
        for device_id, (device_type, name, rated) in SIMULATED_DEVICES.items():
            on = device_id == "fridge" or self._rng.random() < load
            power = round(rated * self._rng.uniform(0.8, 1.0), 3) if on else 0.0
            state["devices"][device_id] += power * hours
            total_power += power
            devices[device_id] = DeviceReading(
                device_type=device_type,
                power_kw=power,
                energy_kwh=round(state["devices"][device_id], 4),
                setpoint=float(self._rng.choice([22, 23, 24, 25])) if device_type == "ac" else None,
                name=name,
            )

        state["energy"] += total_power * hours
        state["at"] = now
        return Reading(
            timestamp=now,
            power_kw=round(total_power, 3),
            energy_kwh=round(state["energy"], 4),
            power_factor=round(self._rng.uniform(0.72, 0.98), 2),
            meter_id=f"sim-{user_id}",
            devices=devices,
        )
