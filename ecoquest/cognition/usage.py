"""
用电画像
由用户最近的读数推算设备日均用电、高峰时段、能效分与趋势
"""

from collections import defaultdict, deque
from statistics import mean

from ..storage.models import DeviceUsage, Reading, UsageSnapshot

MIN_SPAN_DAYS = 1 / 24
TREND_TOLERANCE = 0.05
SAVINGS_RATIO = 0.15


class UsageAnalyzer:
    """读数历史 -> UsageSnapshot"""

    def __init__(self, history_size: int = 2000):
        self.history_size = history_size
        self._history: dict[str, deque[Reading]] = defaultdict(
            lambda: deque(maxlen=self.history_size)
        )

    def record(self, user_id: str, reading: Reading) -> None:
        self._history[user_id].append(reading)

    def history(self, user_id: str) -> list[Reading]:
        return list(self._history.get(user_id, ()))

    def forget(self, user_id: str) -> None:
        self._history.pop(user_id, None)

    def snapshot_for(self, user_id: str) -> UsageSnapshot:
        return self.build_snapshot(self.history(user_id))

    def build_snapshot(self, readings: list[Reading]) -> UsageSnapshot:
        if not readings:
            return UsageSnapshot()

        # 去重并按时间排序
        ordered = sorted({r.timestamp: r for r in readings}.values(), key=lambda r: r.timestamp)
        first, last = ordered[0], ordered[-1]
        span_days = max((last.timestamp - first.timestamp).total_seconds() / 86400, MIN_SPAN_DAYS)

        total = max(0.0, last.energy_kwh - first.energy_kwh) / span_days

        # 各设备首末累计电量
        first_seen: dict[str, float] = {}
        last_seen: dict[str, float] = {}
        info: dict[str, tuple[str, str, float | None]] = {}
        for reading in ordered:
            for device_id, device in reading.devices.items():
                first_seen.setdefault(device_id, device.energy_kwh)
                last_seen[device_id] = device.energy_kwh
                setpoint = device.setpoint if device.setpoint is not None else (
                    info[device_id][2] if device_id in info else None
                )
                info[device_id] = (device.name or device_id, device.device_type, setpoint)
        devices = [
            DeviceUsage(
                device_id=device_id,
                name=info[device_id][0],
                device_type=info[device_id][1],
                average_usage=round(max(0.0, last_seen[device_id] - first_seen[device_id]) / span_days, 2),
                setpoint=info[device_id][2],
            )
            for device_id in first_seen
        ]

        # 按小时的平均功率找高峰
        by_hour: dict[int, list[float]] = defaultdict(list)
        for reading in ordered:
            by_hour[reading.timestamp.hour].append(reading.power_kw)
        peak_hour = max(sorted(by_hour), key=lambda h: mean(by_hour[h]))

        return UsageSnapshot(
            devices=devices,
            peak_usage_time=f"{peak_hour:02d}:00",
            total_consumption=round(total, 2),
            efficiency_score=round(mean(r.efficiency_score for r in ordered), 2),
            trend=self._trend(ordered),
            potential_savings=round(total * SAVINGS_RATIO, 2),
        )

    def _trend(self, ordered: list[Reading]) -> str:
        if len(ordered) < 4:
            return "stable"
        half = len(ordered) // 2
        before = mean(r.power_kw for r in ordered[:half])
        after = mean(r.power_kw for r in ordered[half:])
        if before <= 0:
            return "increasing" if after > 0 else "stable"
        if after > before * (1 + TREND_TOLERANCE):
            return "increasing"
        if after < before * (1 - TREND_TOLERANCE):
            return "decreasing"
        return "stable"
