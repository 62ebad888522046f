"""
任务实例化测试
"""

from datetime import datetime, timedelta

import pytest

from ecoquest.storage.models import (
    Opportunity, OpportunityContext, QuestStatus, ReduceConsumptionObjective, StreakObjective,
)
from ecoquest.system.instantiator import QuestInstantiator, populate

NOW = datetime(2024, 1, 1, 8, 0)


@pytest.fixture
def instantiator():
    return QuestInstantiator()


def _opportunity(template, potential, **context):
    return Opportunity(template.id, template.priority, potential, OpportunityContext(**context))


class TestPopulate:

    def test_known_placeholders(self):
        assert populate("Keep it at {target}°C", {"target": 24.0}) == "Keep it at 24.0°C"

    def test_unknown_placeholders_left_intact(self):
        assert populate("{device} for {mystery}", {"device": "AC"}) == "AC for {mystery}"


class TestQuestInstantiator:

    def test_ac_quest(self, instantiator, registry):
        template = registry.get("ac-temperature-optimization")
        opportunity = _opportunity(
            template, 9.5, device_id="ac1", device_name="Bedroom AC", device_usage=9.5, setpoint=22.0,
        )
        quest = instantiator.instantiate(template, opportunity, "u1", NOW)

        assert quest.id.startswith("ac-temperature-optimization_")
        assert quest.user_id == "u1"
        assert quest.status == QuestStatus.AVAILABLE
        assert (quest.baseline, quest.target, quest.unit) == (22, 24.0, "°C")
        assert quest.reward_points == 472
        assert quest.bonus_points == 0
        assert "3 days" in quest.description
        assert quest.valid_from == NOW
        assert quest.valid_until == NOW + timedelta(hours=168)

        objective = quest.objectives[0]
        assert isinstance(objective, StreakObjective)
        assert objective.target == 3
        assert objective.current == 0
        # 每调高 1°C 约省 6%
        assert quest.savings.energy_kwh == pytest.approx(9.5 * 0.06 * 2 * 3, abs=0.01)

    def test_device_reduction(self, instantiator, registry):
        template = registry.get("high-consumption-device")
        opportunity = _opportunity(
            template, 7.5, device_id="geyser", device_name="Water Heater", device_usage=7.5,
        )
        quest = instantiator.instantiate(template, opportunity, "u1", NOW)

        assert quest.baseline == 7.5
        assert quest.target == 6.0
        assert quest.title == "Tame the Water Heater"
        objective = quest.objectives[0]
        assert isinstance(objective, ReduceConsumptionObjective)
        assert objective.target == 10.5
        assert objective.device_id == "geyser"
        assert quest.savings.energy_kwh == 10.5
        assert quest.savings.cost == round(10.5 * 6.5, 2)

    def test_hard_quest_reward_and_bonus(self, instantiator, registry):
        template = registry.get("efficiency-improvement")
        opportunity = _opportunity(template, 3.0, efficiency_score=6.5, consumption=20.0)
        quest = instantiator.instantiate(template, opportunity, "u1", NOW)

        assert quest.reward_points == 1380
        assert quest.bonus_points == 500
        assert (quest.baseline, quest.target) == (6.5, 8.0)

    def test_reward_potential_factor_is_capped(self, instantiator, registry):
        template = registry.get("total-consumption-reduction")
        assert instantiator.compute_reward(template, _opportunity(template, 100.0)) == 1200

    def test_challenge_badge(self, instantiator, registry):
        template = registry.get("challenge-peak-hour-master")
        quest = instantiator.instantiate(template, _opportunity(template, 0.0, consumption=20.0), "u1", NOW)
        assert quest.badges == ["challenge_challenge-peak-hour-master"]
        assert quest.valid_until == NOW + timedelta(hours=72)

    def test_peak_threshold_personalised(self, instantiator, registry):
        template = registry.get("peak-hour-avoidance")
        quest = instantiator.instantiate(template, _opportunity(template, 6.6, consumption=22.0), "u1", NOW)
        # 22 kWh × 40% / 4h = 2.2 kW，上限为其 70%
        assert quest.baseline == 2.2
        assert quest.target == 1.54
        assert quest.objectives[0].condition.threshold_kw == 1.54

    def test_instantiate_many_respects_slots(self, instantiator, registry):
        pairs = [
            (registry.get(tid), _opportunity(registry.get(tid), 5.0, consumption=22.0, efficiency_score=6.0))
            for tid in ("total-consumption-reduction", "peak-hour-avoidance", "efficiency-improvement")
        ]
        assert len(instantiator.instantiate_many(pairs, "u1", NOW, 2)) == 2
        assert instantiator.instantiate_many(pairs, "u1", NOW, 0) == []
        assert instantiator.instantiate_many(pairs, "u1", NOW, -1) == []
        assert len(instantiator.instantiate_many(pairs, "u1", NOW, 5)) == 3
