"""
调度器
周期任务 (生成周期 / 进度周期) 的统一抽象，支持取消与手动触发
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[None]]


class SystemClock:
    def now(self) -> datetime:
        return datetime.now()


class ManualClock:
    """可手动推进的时钟，用于模拟时间"""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 1, 1, 8, 0)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self._now += timedelta(seconds=seconds, **kwargs)
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment


class Ticker:
    """按固定间隔调用回调；stop 事件即取消令牌"""

    def __init__(self, name: str, interval: float, callback: TickCallback):
        self.name = name
        self.interval = interval
        self.callback = callback
        self.runs = 0
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=f"ticker:{self.name}")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=self.interval + 5)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None

    async def fire(self) -> None:
        """立即执行一次 (模拟时间下驱动周期)"""
        await self._run_once()

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self._run_once()

    async def _run_once(self) -> None:
        try:
            await self.callback()
        except Exception:
            logger.exception("ticker %s failed", self.name)
        self.runs += 1


class Scheduler:
    """管理多个相互独立的 Ticker"""

    def __init__(self):
        self._tickers: dict[str, Ticker] = {}

    def add(self, name: str, interval: float, callback: TickCallback) -> Ticker:
        ticker = Ticker(name, interval, callback)
        self._tickers[name] = ticker
        return ticker

    def get(self, name: str) -> Ticker:
        return self._tickers[name]

    def start(self) -> None:
        for ticker in self._tickers.values():
            ticker.start()
        logger.info("scheduler started: %s", ", ".join(self._tickers))

    async def stop(self) -> None:
        await asyncio.gather(*(t.stop() for t in self._tickers.values()))

    async def fire(self, name: str) -> None:
        await self._tickers[name].fire()
