"""
任务模板注册表
固定的模板目录，按每日/每周/每月/挑战/社区划分，注册后只读
"""

from ..core.errors import TemplateNotFound
from ..storage.models import (
    ConsumptionCondition, DeviceSetpointCondition, DeviceUsageCondition,
    Difficulty, EfficiencyCondition, ObjectiveSpec, ObjectiveType, Operator,
    QuestCategory, QuestTemplate, QuestType, TimeWindow, TotalPowerCondition,
)

EVENING_PEAK = TimeWindow("18:00", "22:00")
DAYLIGHT = TimeWindow("09:00", "17:00")


QUEST_TEMPLATES: list[QuestTemplate] = [
    QuestTemplate(
        id="ac-temperature-optimization",
        title="Cool Smart: keep the AC at {target}°C+",
        description="Set your AC to 24°C or higher for {count} days in a row.",
        category=QuestCategory.EFFICIENCY,
        type=QuestType.WEEKLY,
        difficulty=Difficulty.EASY,
        base_reward=400,
        objective=ObjectiveSpec(ObjectiveType.STREAK, "days", amount=3),
        conditions=(DeviceSetpointCondition("ac", Operator.GE, 24.0),),
        priority=8,
        icon="❄️",
    ),
    QuestTemplate(
        id="lighting-efficiency",
        title="Daylight Champion",
        description="Keep lights off while the sun is up ({peakTime}) for {count} hours.",
        category=QuestCategory.EFFICIENCY,
        type=QuestType.DAILY,
        difficulty=Difficulty.EASY,
        base_reward=250,
        objective=ObjectiveSpec(ObjectiveType.DEVICE_USAGE_THRESHOLD, "hours", amount=4),
        conditions=(DeviceUsageCondition("light", Operator.LT, 0.05, DAYLIGHT),),
        priority=6,
        icon="💡",
    ),
    QuestTemplate(
        id="high-consumption-device",
        title="Tame the {device}",
        description="Cut {device} usage by {percentage}% to {target} kWh/day {duration}.",
        category=QuestCategory.CONSUMPTION,
        type=QuestType.WEEKLY,
        difficulty=Difficulty.MEDIUM,
        base_reward=500,
        objective=ObjectiveSpec(ObjectiveType.REDUCE_CONSUMPTION, "kWh", amount=0.2),
        conditions=(ConsumptionCondition(Operator.LE, 0.0),),
        priority=9,
        icon="🔌",
    ),
    QuestTemplate(
        id="total-consumption-reduction",
        title="Trim the Bill",
        description="Bring total usage down {percentage}% to {target} kWh/day {duration}.",
        category=QuestCategory.CONSUMPTION,
        type=QuestType.DAILY,
        difficulty=Difficulty.MEDIUM,
        base_reward=600,
        objective=ObjectiveSpec(ObjectiveType.REDUCE_CONSUMPTION, "kWh", amount=0.1),
        conditions=(ConsumptionCondition(Operator.LE, 0.0),),
        priority=8,
        icon="📉",
    ),
    QuestTemplate(
        id="peak-hour-avoidance",
        title="Peak Hour Hero",
        description="Stay under {target} kW during {peakTime} for {count} hours.",
        category=QuestCategory.TIMING,
        type=QuestType.WEEKLY,
        difficulty=Difficulty.HARD,
        base_reward=750,
        objective=ObjectiveSpec(ObjectiveType.TIME_WINDOW_COMPLIANCE, "hours", amount=12),
        conditions=(TotalPowerCondition(Operator.LE, 2.0, EVENING_PEAK),),
        priority=7,
        icon="⏰",
    ),
    QuestTemplate(
        id="efficiency-improvement",
        title="Power Factor Tune-up",
        description="Raise your efficiency score to {target}.",
        category=QuestCategory.MAINTENANCE,
        type=QuestType.MONTHLY,
        difficulty=Difficulty.HARD,
        base_reward=1000,
        objective=ObjectiveSpec(ObjectiveType.EFFICIENCY_THRESHOLD, "score"),
        conditions=(EfficiencyCondition(Operator.GE, 8.0),),
        priority=9,
        icon="🛠️",
    ),
    QuestTemplate(
        id="weekly-streak-warrior",
        title="Streak Warrior",
        description="Keep evening draw under {target} kW for {count} days straight.",
        category=QuestCategory.TIMING,
        type=QuestType.WEEKLY,
        difficulty=Difficulty.MEDIUM,
        base_reward=500,
        objective=ObjectiveSpec(ObjectiveType.STREAK, "days", amount=7),
        conditions=(TotalPowerCondition(Operator.LE, 2.0, EVENING_PEAK),),
        priority=5,
        level_requirement=5,
        icon="🔥",
        bonus_badges=("streak_warrior",),
    ),
    QuestTemplate(
        id="monthly-sustainability-champion",
        title="Sustainability Champion",
        description="Save {amount} kWh this month by holding usage at {target} kWh/day.",
        category=QuestCategory.CONSUMPTION,
        type=QuestType.MONTHLY,
        difficulty=Difficulty.HARD,
        base_reward=1500,
        objective=ObjectiveSpec(ObjectiveType.REDUCE_CONSUMPTION, "kWh", amount=0.15),
        conditions=(ConsumptionCondition(Operator.LE, 0.0),),
        priority=6,
        level_requirement=15,
        icon="🌍",
        bonus_badges=("sustainability_champion",),
    ),
    QuestTemplate(
        id="community-peak-shave",
        title="Neighbourhood Peak Shave",
        description="Join your neighbours: stay under {target} kW during {peakTime} for {count} hours.",
        category=QuestCategory.COMMUNITY,
        type=QuestType.COMMUNITY,
        difficulty=Difficulty.MEDIUM,
        base_reward=600,
        objective=ObjectiveSpec(ObjectiveType.TIME_WINDOW_COMPLIANCE, "hours", amount=10),
        conditions=(TotalPowerCondition(Operator.LE, 1.5, TimeWindow("17:00", "21:00")),),
        priority=4,
        level_requirement=8,
        repeatable=True,
        icon="🤝",
        evergreen=True,
    ),
    QuestTemplate(
        id="challenge-peak-hour-master",
        title="Peak Hour Master",
        description="Expert challenge: under {target} kW during {peakTime} for {count} days.",
        category=QuestCategory.TIMING,
        type=QuestType.CHALLENGE,
        difficulty=Difficulty.EXPERT,
        base_reward=2000,
        objective=ObjectiveSpec(ObjectiveType.STREAK, "days", amount=3),
        conditions=(TotalPowerCondition(Operator.LE, 1.0, EVENING_PEAK),),
        priority=7,
        level_requirement=20,
        prerequisites=("weekly-streak-warrior",),
        icon="🏆",
        evergreen=True,
    ),
]


class TemplateRegistry:
    """模板注册表"""

    def __init__(self, templates: list[QuestTemplate] | None = None):
        self._templates: dict[str, QuestTemplate] = {}
        for template in QUEST_TEMPLATES if templates is None else templates:
            self.register(template)

    def register(self, template: QuestTemplate) -> None:
        if template.id in self._templates:
            raise ValueError(f"duplicate template id: {template.id}")
        self._templates[template.id] = template

    def get(self, template_id: str) -> QuestTemplate:
        try:
            return self._templates[template_id]
        except KeyError:
            raise TemplateNotFound(template_id) from None

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def all(self) -> list[QuestTemplate]:
        return list(self._templates.values())

    def by_type(self, quest_type: QuestType) -> list[QuestTemplate]:
        return [t for t in self._templates.values() if t.type == quest_type]

    def order_of(self, template_id: str) -> int:
        """注册顺序，用于排序平局"""
        for index, key in enumerate(self._templates):
            if key == template_id:
                return index
        raise TemplateNotFound(template_id)

    def eligible_for(self, user_level: int, completed_ids: set[str]) -> list[QuestTemplate]:
        """过滤掉等级不足、前置未完成、或已完成的一次性模板"""
        eligible = []
        for template in self._templates.values():
            if template.level_requirement > user_level:
                continue
            if any(prereq not in completed_ids for prereq in template.prerequisites):
                continue
            if not template.repeatable and template.id in completed_ids:
                continue
            eligible.append(template)
        return eligible
