"""
机会分析器
根据用电快照用启发式规则找出可生成任务的机会，并确定性排序
"""

import logging
from typing import Callable

from ..storage.models import DeviceUsage, Opportunity, OpportunityContext, QuestTemplate, UsageSnapshot

logger = logging.getLogger(__name__)

# 规则返回 (优先级, 潜力, 上下文)，不满足返回 None
Rule = Callable[[UsageSnapshot], tuple[int, float, OpportunityContext] | None]

HIGH_USAGE_KWH = 5.0
AC_USAGE_KWH = 8.0
EFFICIENCY_TARGET = 8.0


def _is_type(device: DeviceUsage, device_type: str) -> bool:
    if device.device_type == device_type:
        return True
    words = device.name.lower().replace("-", " ").split()
    return device_type in words


def _device_context(snapshot: UsageSnapshot, device: DeviceUsage) -> OpportunityContext:
    return OpportunityContext(
        device_id=device.device_id,
        device_name=device.name,
        device_type=device.device_type,
        device_usage=device.average_usage,
        setpoint=device.setpoint,
        peak_time=snapshot.peak_usage_time,
        consumption=snapshot.total_consumption,
        efficiency_score=snapshot.efficiency_score,
    )


def _snapshot_context(snapshot: UsageSnapshot) -> OpportunityContext:
    return OpportunityContext(
        peak_time=snapshot.peak_usage_time,
        consumption=snapshot.total_consumption,
        efficiency_score=snapshot.efficiency_score,
    )


def high_consumption_device(snapshot: UsageSnapshot):
    heavy = [d for d in snapshot.devices if d.average_usage > HIGH_USAGE_KWH]
    if not heavy:
        return None
    device = max(heavy, key=lambda d: d.average_usage)
    return 9, device.average_usage, _device_context(snapshot, device)


def ac_temperature(snapshot: UsageSnapshot):
    units = [d for d in snapshot.devices if _is_type(d, "ac") and d.average_usage > AC_USAGE_KWH]
    if not units:
        return None
    device = max(units, key=lambda d: d.average_usage)
    return 8, device.average_usage, _device_context(snapshot, device)


def lighting(snapshot: UsageSnapshot):
    lights = [d for d in snapshot.devices if _is_type(d, "light")]
    if len(lights) <= 2:
        return None
    usage = round(sum(d.average_usage for d in lights), 2)
    context = OpportunityContext(
        device_type="light",
        device_usage=usage,
        peak_time=snapshot.peak_usage_time,
        consumption=snapshot.total_consumption,
    )
    return 6, usage, context


def peak_hour(snapshot: UsageSnapshot):
    if 18 <= snapshot.peak_hour <= 22 and snapshot.total_consumption > 15:
        return 7, round(snapshot.total_consumption * 0.3, 2), _snapshot_context(snapshot)
    return None


def efficiency(snapshot: UsageSnapshot):
    if snapshot.efficiency_score < EFFICIENCY_TARGET:
        gap = round((EFFICIENCY_TARGET - snapshot.efficiency_score) * 2, 2)
        return 9, gap, _snapshot_context(snapshot)
    return None


def total_consumption(snapshot: UsageSnapshot):
    if snapshot.total_consumption > 20:
        return 8, round(snapshot.total_consumption * 0.1, 2), _snapshot_context(snapshot)
    return None


def evening_streak(snapshot: UsageSnapshot):
    if 17 <= snapshot.peak_hour <= 22 and snapshot.total_consumption > 10:
        return 5, round(snapshot.total_consumption * 0.1, 2), _snapshot_context(snapshot)
    return None


def monthly_savings(snapshot: UsageSnapshot):
    if snapshot.total_consumption > 25:
        return 6, round(snapshot.total_consumption * 0.15, 2), _snapshot_context(snapshot)
    return None


# 模板 id -> 规则
RULES: dict[str, Rule] = {
    "high-consumption-device": high_consumption_device,
    "ac-temperature-optimization": ac_temperature,
    "lighting-efficiency": lighting,
    "peak-hour-avoidance": peak_hour,
    "efficiency-improvement": efficiency,
    "total-consumption-reduction": total_consumption,
    "weekly-streak-warrior": evening_streak,
    "monthly-sustainability-champion": monthly_savings,
}


class OpportunityAnalyzer:
    """机会分析器"""

    def __init__(self, rules: dict[str, Rule] | None = None):
        self.rules = RULES if rules is None else rules

    def analyze(
        self,
        snapshot: UsageSnapshot,
        templates: list[QuestTemplate],
    ) -> list[Opportunity]:
        """对可选模板逐一评估，按 priority*10+potential 降序，平局按模板顺序"""
        opportunities = []
        for order, template in enumerate(templates):
            rule = self.rules.get(template.id)
            if rule is not None:
                hit = rule(snapshot)
                if hit is None:
                    continue
                priority, potential, context = hit
            elif template.evergreen:
                priority, potential, context = template.priority, 0.0, _snapshot_context(snapshot)
            else:
                continue
            opportunities.append(Opportunity(
                template_id=template.id,
                priority=priority,
                potential=potential,
                context=context,
                order=order,
            ))

        opportunities.sort(key=lambda o: (-o.score, o.order))
        logger.debug(
            "analyzed %d templates -> %s",
            len(templates), [o.template_id for o in opportunities],
        )
        return opportunities
