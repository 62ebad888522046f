"""
数据模型定义
读数、使用快照、任务模板、任务实例、目标、奖励
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union


class QuestType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CHALLENGE = "challenge"
    COMMUNITY = "community"


class QuestCategory(str, Enum):
    EFFICIENCY = "efficiency"
    CONSUMPTION = "consumption"
    TIMING = "timing"
    AUTOMATION = "automation"
    MAINTENANCE = "maintenance"
    COMMUNITY = "community"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    EXPERT = "expert"


class QuestStatus(str, Enum):
    AVAILABLE = "available"  # 已生成，等待接受
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_STATUSES = {QuestStatus.COMPLETED, QuestStatus.EXPIRED, QuestStatus.FAILED}


class ObjectiveType(str, Enum):
    REDUCE_CONSUMPTION = "reduce_consumption"
    DEVICE_USAGE_THRESHOLD = "device_usage_threshold"
    TIME_WINDOW_COMPLIANCE = "time_window_compliance"
    EFFICIENCY_THRESHOLD = "efficiency_threshold"
    STREAK = "streak"


class Operator(str, Enum):
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    EQ = "="

    def apply(self, value: float, threshold: float) -> bool:
        if self is Operator.GT:
            return value > threshold
        if self is Operator.LT:
            return value < threshold
        if self is Operator.GE:
            return value >= threshold
        if self is Operator.LE:
            return value <= threshold
        return abs(value - threshold) < 1e-9


# 各类任务默认时长 (小时)
DEFAULT_DURATION_HOURS = {
    QuestType.DAILY: 24,
    QuestType.WEEKLY: 168,
    QuestType.MONTHLY: 720,
    QuestType.CHALLENGE: 72,
    QuestType.COMMUNITY: 168,
}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ── 读数 ──────────────────────────────────────────


def local_naive(moment: datetime) -> datetime:
    """带时区的时间换算为本地无时区时间，与时钟及已存储的时间一致"""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone().replace(tzinfo=None)


@dataclass(frozen=True)
class DeviceReading:
    """单个设备的分项读数"""
    device_type: str
    power_kw: float = 0.0
    energy_kwh: float = 0.0         # 累计电量
    setpoint: float | None = None   # 空调等设备的设定温度
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_type": self.device_type,
            "power_kw": self.power_kw,
            "energy_kwh": self.energy_kwh,
            "setpoint": self.setpoint,
            "name": self.name,
        }


@dataclass(frozen=True)
class Reading:
    """电表读数，可能重复或乱序到达"""
    timestamp: datetime
    power_kw: float
    energy_kwh: float               # 累计电量寄存器
    power_factor: float = 1.0
    meter_id: str = ""
    devices: dict[str, DeviceReading] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "timestamp", local_naive(self.timestamp))

    @property
    def efficiency_score(self) -> float:
        return round(self.power_factor * 10, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "power_kw": self.power_kw,
            "energy_kwh": self.energy_kwh,
            "power_factor": self.power_factor,
            "meter_id": self.meter_id,
            "devices": {k: d.to_dict() for k, d in self.devices.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Reading:
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        return cls(
            timestamp=timestamp,
            power_kw=float(data.get("power_kw", 0.0)),
            energy_kwh=float(data.get("energy_kwh", 0.0)),
            power_factor=float(data.get("power_factor", 1.0)),
            meter_id=data.get("meter_id", ""),
            devices={k: DeviceReading(**d) for k, d in (data.get("devices") or {}).items()},
        )


# ── 条件 ──────────────────────────────────────────


@dataclass(frozen=True)
class TimeWindow:
    """一天中的时间窗口，HH:MM，支持跨零点"""
    start: str
    end: str

    @staticmethod
    def _minutes(value: str) -> int:
        hour, minute = value.split(":")
        return int(hour) * 60 + int(minute)

    def contains(self, moment: datetime) -> bool:
        start, end = self._minutes(self.start), self._minutes(self.end)
        now = moment.hour * 60 + moment.minute
        if start <= end:
            return start <= now < end
        return now >= start or now < end

    @property
    def hours(self) -> float:
        start, end = self._minutes(self.start), self._minutes(self.end)
        span = end - start if start < end else 24 * 60 - start + end
        return span / 60

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class DeviceUsageCondition:
    """某类设备 (全部) 的功率满足阈值"""
    kind: ClassVar[str] = "device_usage"
    device_type: str
    operator: Operator
    threshold_kw: float
    window: TimeWindow | None = None

    def matches(self, reading: Reading) -> bool:
        if self.window and not self.window.contains(reading.timestamp):
            return False
        devices = [d for d in reading.devices.values() if d.device_type == self.device_type]
        if not devices:
            return False
        return all(self.operator.apply(d.power_kw, self.threshold_kw) for d in devices)


@dataclass(frozen=True)
class DeviceSetpointCondition:
    """设备设定值 (如空调温度) 满足阈值"""
    kind: ClassVar[str] = "device_setpoint"
    device_type: str
    operator: Operator
    threshold: float

    def matches(self, reading: Reading) -> bool:
        devices = [
            d for d in reading.devices.values()
            if d.device_type == self.device_type and d.setpoint is not None
        ]
        if not devices:
            return False
        return all(self.operator.apply(d.setpoint, self.threshold) for d in devices)


@dataclass(frozen=True)
class TotalPowerCondition:
    """总功率在时间窗口内满足阈值"""
    kind: ClassVar[str] = "total_power"
    operator: Operator
    threshold_kw: float
    window: TimeWindow | None = None

    def matches(self, reading: Reading) -> bool:
        if self.window and not self.window.contains(reading.timestamp):
            return False
        return self.operator.apply(reading.power_kw, self.threshold_kw)


@dataclass(frozen=True)
class ConsumptionCondition:
    """按当前功率折算的日用电量满足阈值"""
    kind: ClassVar[str] = "total_consumption"
    operator: Operator
    threshold_kwh: float

    def matches(self, reading: Reading) -> bool:
        return self.operator.apply(reading.power_kw * 24, self.threshold_kwh)


@dataclass(frozen=True)
class EfficiencyCondition:
    """能效分 (功率因数 × 10) 满足阈值"""
    kind: ClassVar[str] = "efficiency_score"
    operator: Operator
    threshold: float

    def matches(self, reading: Reading) -> bool:
        return self.operator.apply(reading.efficiency_score, self.threshold)


Condition = Union[
    DeviceUsageCondition,
    DeviceSetpointCondition,
    TotalPowerCondition,
    ConsumptionCondition,
    EfficiencyCondition,
]

CONDITION_KINDS: dict[str, type] = {
    cls.kind: cls
    for cls in (
        DeviceUsageCondition,
        DeviceSetpointCondition,
        TotalPowerCondition,
        ConsumptionCondition,
        EfficiencyCondition,
    )
}


def condition_to_dict(condition: Condition) -> dict[str, Any]:
    data: dict[str, Any] = {"kind": condition.kind}
    for name, value in vars(condition).items():
        if isinstance(value, Operator):
            value = value.value
        elif isinstance(value, TimeWindow):
            value = value.to_dict()
        data[name] = value
    return data


def condition_from_dict(data: dict[str, Any]) -> Condition:
    data = dict(data)
    cls = CONDITION_KINDS[data.pop("kind")]
    data["operator"] = Operator(data["operator"])
    if data.get("window"):
        data["window"] = TimeWindow(**data["window"])
    return cls(**data)


# ── 目标 ──────────────────────────────────────────


@dataclass(kw_only=True)
class Objective:
    """任务目标基类；current 只增不减"""
    type: ClassVar[ObjectiveType]
    target: float
    unit: str
    description: str = ""
    current: float = 0.0
    percentage: float = 0.0
    completed: bool = False

    def _base_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "description": self.description,
            "target": self.target,
            "unit": self.unit,
            "current": self.current,
            "percentage": self.percentage,
            "completed": self.completed,
        }

    @staticmethod
    def _base_kwargs(data: dict[str, Any]) -> dict[str, Any]:
        return {
            "description": data.get("description", ""),
            "target": data["target"],
            "unit": data["unit"],
            "current": data.get("current", 0.0),
            "percentage": data.get("percentage", 0.0),
            "completed": data.get("completed", False),
        }

    def to_dict(self) -> dict[str, Any]:
        return self._base_dict()


@dataclass(kw_only=True)
class ReduceConsumptionObjective(Objective):
    """相对基线的节电量 (kWh)；target 为计划节电量"""
    type: ClassVar[ObjectiveType] = ObjectiveType.REDUCE_CONSUMPTION
    baseline_rate: float            # kWh/天
    target_rate: float              # kWh/天
    device_id: str | None = None
    anchor_kwh: float | None = None
    anchor_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data.update(
            baseline_rate=self.baseline_rate,
            target_rate=self.target_rate,
            device_id=self.device_id,
            anchor_kwh=self.anchor_kwh,
            anchor_at=_iso(self.anchor_at),
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReduceConsumptionObjective:
        return cls(
            **cls._base_kwargs(data),
            baseline_rate=data["baseline_rate"],
            target_rate=data["target_rate"],
            device_id=data.get("device_id"),
            anchor_kwh=data.get("anchor_kwh"),
            anchor_at=_dt(data.get("anchor_at")),
        )


@dataclass(kw_only=True)
class _PeriodObjective(Objective):
    """按满足条件的整点小时计数"""
    periods: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data.update(condition=condition_to_dict(self.condition), periods=sorted(self.periods))
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        return cls(
            **cls._base_kwargs(data),
            condition=condition_from_dict(data["condition"]),
            periods=set(data.get("periods", [])),
        )


@dataclass(kw_only=True)
class DeviceThresholdObjective(_PeriodObjective):
    type: ClassVar[ObjectiveType] = ObjectiveType.DEVICE_USAGE_THRESHOLD
    condition: DeviceUsageCondition


@dataclass(kw_only=True)
class TimeWindowObjective(_PeriodObjective):
    type: ClassVar[ObjectiveType] = ObjectiveType.TIME_WINDOW_COMPLIANCE
    condition: TotalPowerCondition


@dataclass(kw_only=True)
class EfficiencyObjective(Objective):
    """能效分从 baseline 提升到 target"""
    type: ClassVar[ObjectiveType] = ObjectiveType.EFFICIENCY_THRESHOLD
    baseline: float

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data["baseline"] = self.baseline
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EfficiencyObjective:
        return cls(**cls._base_kwargs(data), baseline=data["baseline"])


@dataclass(kw_only=True)
class StreakObjective(Objective):
    """连续满足条件的天数"""
    type: ClassVar[ObjectiveType] = ObjectiveType.STREAK
    condition: Condition
    days: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data.update(condition=condition_to_dict(self.condition), days=sorted(self.days))
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreakObjective:
        return cls(
            **cls._base_kwargs(data),
            condition=condition_from_dict(data["condition"]),
            days=set(data.get("days", [])),
        )


OBJECTIVE_TYPES: dict[ObjectiveType, type] = {
    cls.type: cls
    for cls in (
        ReduceConsumptionObjective,
        DeviceThresholdObjective,
        TimeWindowObjective,
        EfficiencyObjective,
        StreakObjective,
    )
}


def objective_from_dict(data: dict[str, Any]) -> Objective:
    return OBJECTIVE_TYPES[ObjectiveType(data["type"])].from_dict(data)


# ── 模板 ──────────────────────────────────────────


@dataclass(frozen=True)
class ObjectiveSpec:
    """模板中的目标描述；amount 为天数/小时数/比例，具体含义取决于 type"""
    type: ObjectiveType
    unit: str
    amount: float = 0.0


@dataclass(frozen=True)
class QuestTemplate:
    id: str
    title: str
    description: str
    category: QuestCategory
    type: QuestType
    difficulty: Difficulty
    base_reward: int
    objective: ObjectiveSpec
    conditions: tuple[Condition, ...] = ()
    priority: int = 5
    level_requirement: int = 1
    prerequisites: tuple[str, ...] = ()
    repeatable: bool | None = None     # None = 每日/每周任务可重复
    duration_hours: int | None = None  # None = 按任务类型
    icon: str = ""
    bonus_badges: tuple[str, ...] = ()
    evergreen: bool = False            # 无分析规则时也可生成

    def __post_init__(self):
        if self.repeatable is None:
            object.__setattr__(
                self, "repeatable", self.type in (QuestType.DAILY, QuestType.WEEKLY),
            )
        if self.duration_hours is None:
            object.__setattr__(self, "duration_hours", DEFAULT_DURATION_HOURS[self.type])

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category.value,
            "type": self.type.value,
            "difficulty": self.difficulty.value,
            "base_reward": self.base_reward,
            "objective": {
                "type": self.objective.type.value,
                "unit": self.objective.unit,
                "amount": self.objective.amount,
            },
            "conditions": [condition_to_dict(c) for c in self.conditions],
            "priority": self.priority,
            "level_requirement": self.level_requirement,
            "prerequisites": list(self.prerequisites),
            "repeatable": self.repeatable,
            "duration_hours": self.duration_hours,
            "icon": self.icon,
            "bonus_badges": list(self.bonus_badges),
        }


# ── 使用快照与机会 ────────────────────────────────


@dataclass
class DeviceUsage:
    device_id: str
    name: str
    device_type: str
    average_usage: float             # kWh/天
    setpoint: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "device_type": self.device_type,
            "average_usage": self.average_usage,
            "setpoint": self.setpoint,
        }


@dataclass
class UsageSnapshot:
    """某用户的用电概况"""
    devices: list[DeviceUsage] = field(default_factory=list)
    peak_usage_time: str = "00:00"
    total_consumption: float = 0.0   # kWh/天
    efficiency_score: float = 10.0   # 0-10
    trend: str = "stable"
    potential_savings: float = 0.0

    @property
    def peak_hour(self) -> int:
        return int(self.peak_usage_time.split(":")[0])

    def to_dict(self) -> dict[str, Any]:
        return {
            "devices": [d.to_dict() for d in self.devices],
            "peak_usage_time": self.peak_usage_time,
            "total_consumption": self.total_consumption,
            "efficiency_score": self.efficiency_score,
            "trend": self.trend,
            "potential_savings": self.potential_savings,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageSnapshot:
        return cls(
            devices=[DeviceUsage(**d) for d in data.get("devices", [])],
            peak_usage_time=data.get("peak_usage_time", "00:00"),
            total_consumption=data.get("total_consumption", 0.0),
            efficiency_score=data.get("efficiency_score", 10.0),
            trend=data.get("trend", "stable"),
            potential_savings=data.get("potential_savings", 0.0),
        )


@dataclass(frozen=True)
class OpportunityContext:
    device_id: str | None = None
    device_name: str | None = None
    device_type: str | None = None
    device_usage: float | None = None
    setpoint: float | None = None
    peak_time: str | None = None
    consumption: float | None = None
    efficiency_score: float | None = None


@dataclass(frozen=True)
class Opportunity:
    """分析得出的可生成任务的机会，不持久化"""
    template_id: str
    priority: int
    potential: float
    context: OpportunityContext = field(default_factory=OpportunityContext)
    order: int = 0                   # 模板注册顺序，用于平局

    @property
    def score(self) -> float:
        return self.priority * 10 + self.potential


# ── 任务 ──────────────────────────────────────────


@dataclass
class SavingsEstimate:
    energy_kwh: float = 0.0
    cost: float = 0.0                # ₹
    carbon_kg: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"energy_kwh": self.energy_kwh, "cost": self.cost, "carbon_kg": self.carbon_kg}


@dataclass
class QuestProgress:
    status: QuestStatus = QuestStatus.AVAILABLE
    percentage: float = 0.0
    milestones_awarded: list[int] = field(default_factory=list)
    last_activity: datetime | None = None
    streak: int = 0


@dataclass
class Quest:
    id: str
    template_id: str
    user_id: str
    title: str
    description: str
    type: QuestType
    category: QuestCategory
    difficulty: Difficulty
    objectives: list[Objective]
    baseline: float
    target: float
    unit: str
    reward_points: int
    valid_from: datetime
    valid_until: datetime
    bonus_points: int = 0
    badges: list[str] = field(default_factory=list)
    savings: SavingsEstimate = field(default_factory=SavingsEstimate)
    icon: str = ""
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    progress: QuestProgress = field(default_factory=QuestProgress)

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now()

    @property
    def status(self) -> QuestStatus:
        return self.progress.status

    @property
    def current(self) -> float:
        return self.objectives[0].current if self.objectives else 0.0

    @property
    def is_terminal(self) -> bool:
        return self.progress.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "type": self.type.value,
            "category": self.category.value,
            "difficulty": self.difficulty.value,
            "objectives": [o.to_dict() for o in self.objectives],
            "baseline": self.baseline,
            "target": self.target,
            "current": self.current,
            "unit": self.unit,
            "percentage": self.progress.percentage,
            "status": self.progress.status.value,
            "milestones_awarded": list(self.progress.milestones_awarded),
            "streak": self.progress.streak,
            "last_activity": _iso(self.progress.last_activity),
            "reward_points": self.reward_points,
            "bonus_points": self.bonus_points,
            "badges": list(self.badges),
            "savings": self.savings.to_dict(),
            "icon": self.icon,
            "created_at": _iso(self.created_at),
            "valid_from": _iso(self.valid_from),
            "started_at": _iso(self.started_at),
            "valid_until": _iso(self.valid_until),
            "completed_at": _iso(self.completed_at),
        }


@dataclass
class RewardResult:
    """一次奖励结算，id 为幂等键"""
    id: str
    user_id: str
    points: int
    quest_id: str | None = None
    template_id: str | None = None
    badges: list[str] = field(default_factory=list)
    achievements: list[str] = field(default_factory=list)
    reason: str = ""
    energy_saved_kwh: float = 0.0
    community_help: int = 0
    completes_quest: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "points": self.points,
            "quest_id": self.quest_id,
            "template_id": self.template_id,
            "badges": list(self.badges),
            "achievements": list(self.achievements),
            "reason": self.reason,
            "energy_saved_kwh": self.energy_saved_kwh,
            "community_help": self.community_help,
            "completes_quest": self.completes_quest,
        }
