"""
任务实例化
把 (模板, 机会) 变成具体任务：个性化基线/目标、奖励、有效期、文案、节省估算
"""

import dataclasses
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from ..storage.models import (
    DeviceSetpointCondition, DeviceThresholdObjective, Difficulty, EfficiencyObjective, Objective,
    ObjectiveType, Opportunity, Quest, QuestCategory, QuestProgress, QuestStatus,
    QuestTemplate, QuestType, ReduceConsumptionObjective, SavingsEstimate,
    StreakObjective, TimeWindowObjective,
)

logger = logging.getLogger(__name__)

DIFFICULTY_REWARD = {
    Difficulty.EASY: 0.8,
    Difficulty.MEDIUM: 1.0,
    Difficulty.HARD: 1.2,
    Difficulty.EXPERT: 1.2,
}

COST_PER_KWH = 6.5        # ₹
CARBON_PER_KWH = 0.82     # kg CO₂
DEFAULT_AC_SETPOINT = 22.0
PEAK_SHARE = 0.4          # 晚高峰占日用电比例
PEAK_ALLOWANCE = 0.7


class _FormatDict(dict):
    """未知占位符原样保留"""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def populate(text: str, values: dict[str, Any]) -> str:
    return text.format_map(_FormatDict(values))


class QuestInstantiator:
    """任务实例化器"""

    def compute_reward(self, template: QuestTemplate, opportunity: Opportunity) -> int:
        potential_factor = min(2.0, 1 + opportunity.potential / 20)
        return round(template.base_reward * potential_factor * DIFFICULTY_REWARD[template.difficulty])

    def instantiate(
        self,
        template: QuestTemplate,
        opportunity: Opportunity,
        user_id: str,
        now: datetime,
    ) -> Quest:
        objective, baseline, target, unit = self._build_objective(template, opportunity)
        days = template.duration_hours / 24
        values = self._placeholders(template, opportunity, objective, baseline, target)

        objective.description = populate(template.description, values)
        reward = self.compute_reward(template, opportunity)

        quest = Quest(
            id=f"{template.id}_{uuid.uuid4().hex[:8]}",
            template_id=template.id,
            user_id=user_id,
            title=populate(template.title, values),
            description=populate(template.description, values),
            type=template.type,
            category=template.category,
            difficulty=template.difficulty,
            objectives=[objective],
            baseline=baseline,
            target=target,
            unit=unit,
            reward_points=reward,
            bonus_points=self._bonus_points(template),
            badges=self._bonus_badges(template),
            savings=self._savings(template, opportunity, baseline, target, days),
            icon=template.icon,
            created_at=now,
            valid_from=now,
            valid_until=now + timedelta(hours=template.duration_hours),
            progress=QuestProgress(status=QuestStatus.AVAILABLE),
        )
        logger.debug("instantiated %s for %s (reward %d)", quest.id, user_id, reward)
        return quest

    def instantiate_many(
        self,
        pairs: list[tuple[QuestTemplate, Opportunity]],
        user_id: str,
        now: datetime,
        slots: int,
    ) -> list[Quest]:
        return [self.instantiate(t, o, user_id, now) for t, o in pairs[:max(0, slots)]]

    # ── 目标 ──────────────────────────────────────────

    def _build_objective(
        self, template: QuestTemplate, opportunity: Opportunity,
    ) -> tuple[Objective, float, float, str]:
        """返回 (目标, 基线, 目标值, 基线单位)"""
        spec = template.objective
        ctx = opportunity.context
        days = template.duration_hours / 24

        if spec.type == ObjectiveType.REDUCE_CONSUMPTION:
            if ctx.device_id:
                baseline = ctx.device_usage or opportunity.potential
            else:
                baseline = ctx.consumption or opportunity.potential
            baseline = round(baseline, 2)
            target = round(baseline * (1 - spec.amount), 2)
            objective = ReduceConsumptionObjective(
                target=round((baseline - target) * days, 2),
                unit=spec.unit,
                baseline_rate=baseline,
                target_rate=target,
                device_id=ctx.device_id,
            )
            return objective, baseline, target, "kWh/day"

        condition = template.conditions[0]

        if spec.type == ObjectiveType.STREAK:
            if isinstance(condition, DeviceSetpointCondition):
                baseline = ctx.setpoint if ctx.setpoint is not None else DEFAULT_AC_SETPOINT
                target = condition.threshold
                unit = "°C"
            else:
                baseline, target = self._peak_power(condition, ctx)
                unit = "kW"
                condition = dataclasses.replace(condition, threshold_kw=target)
            objective = StreakObjective(target=spec.amount, unit=spec.unit, condition=condition)
            return objective, baseline, target, unit

        if spec.type == ObjectiveType.TIME_WINDOW_COMPLIANCE:
            baseline, target = self._peak_power(condition, ctx)
            condition = dataclasses.replace(condition, threshold_kw=target)
            objective = TimeWindowObjective(target=spec.amount, unit=spec.unit, condition=condition)
            return objective, baseline, target, "kW"

        if spec.type == ObjectiveType.DEVICE_USAGE_THRESHOLD:
            baseline = round(ctx.device_usage or opportunity.potential, 2)
            target = round(baseline * 0.5, 2)
            objective = DeviceThresholdObjective(target=spec.amount, unit=spec.unit, condition=condition)
            return objective, baseline, target, "kWh/day"

        if spec.type == ObjectiveType.EFFICIENCY_THRESHOLD:
            baseline = round(ctx.efficiency_score if ctx.efficiency_score is not None else 0.0, 2)
            target = condition.threshold
            objective = EfficiencyObjective(target=target, unit=spec.unit, baseline=baseline)
            return objective, baseline, target, "score"

        raise ValueError(f"unsupported objective type: {spec.type}")

    def _peak_power(self, condition, ctx) -> tuple[float, float]:
        """晚高峰平均功率基线 (kW) 与允许上限"""
        window_hours = condition.window.hours if condition.window else 24
        if ctx.consumption:
            baseline = round(ctx.consumption * PEAK_SHARE / window_hours, 2)
            target = round(baseline * PEAK_ALLOWANCE, 2)
            if target > 0:
                return baseline, target
        return condition.threshold_kw, condition.threshold_kw

    # ── 文案与奖励 ────────────────────────────────────

    def _placeholders(
        self,
        template: QuestTemplate,
        opportunity: Opportunity,
        objective: Objective,
        baseline: float,
        target: float,
    ) -> dict[str, Any]:
        ctx = opportunity.context
        window = getattr(getattr(objective, "condition", None), "window", None)
        percentage = 20
        if baseline and target < baseline:
            percentage = round((baseline - target) / baseline * 100)
        amount = objective.target if template.objective.type == ObjectiveType.REDUCE_CONSUMPTION \
            else round(baseline * 0.2 or 5)
        return {
            "target": target,
            "percentage": percentage,
            "count": int(objective.target) if template.objective.unit in ("days", "hours") else 3,
            "peakTime": str(window) if window else "18:00-22:00",
            "amount": amount,
            "device": ctx.device_name or "device",
            "duration": {
                QuestType.DAILY: "today",
                QuestType.WEEKLY: "this week",
                QuestType.MONTHLY: "this month",
            }.get(template.type, "today"),
        }

    def _bonus_points(self, template: QuestTemplate) -> int:
        if template.difficulty in (Difficulty.HARD, Difficulty.EXPERT):
            return round(template.base_reward * 0.5)
        return 0

    def _bonus_badges(self, template: QuestTemplate) -> list[str]:
        badges = list(template.bonus_badges)
        if template.type == QuestType.CHALLENGE:
            badges.append(f"challenge_{template.id}")
        return badges

    def _savings(
        self,
        template: QuestTemplate,
        opportunity: Opportunity,
        baseline: float,
        target: float,
        days: float,
    ) -> SavingsEstimate:
        ctx = opportunity.context
        spec = template.objective
        if spec.type == ObjectiveType.REDUCE_CONSUMPTION:
            energy = (baseline - target) * days
        elif spec.type == ObjectiveType.EFFICIENCY_THRESHOLD:
            # 能效分每提升 1 分约省 1% 用电
            energy = (ctx.consumption or 0.0) * max(0.0, target - baseline) / 100 * days
        elif _uses_setpoint(template):
            # 空调每调高 1°C 约省 6%
            energy = (ctx.device_usage or 0.0) * 0.06 * max(0.0, target - baseline) * spec.amount
        elif template.category == QuestCategory.EFFICIENCY:
            energy = (baseline - target) * days
        else:
            # 转移负荷只算一半节省
            hours = spec.amount if spec.unit == "hours" else spec.amount * 4
            energy = max(0.0, baseline - target) * hours * 0.5
        energy = round(max(0.0, energy), 2)
        return SavingsEstimate(
            energy_kwh=energy,
            cost=round(energy * COST_PER_KWH, 2),
            carbon_kg=round(energy * CARBON_PER_KWH, 2),
        )


def _uses_setpoint(template: QuestTemplate) -> bool:
    return any(isinstance(c, DeviceSetpointCondition) for c in template.conditions)
