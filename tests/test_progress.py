"""
进度追踪测试
连续天数推进、只完成一次、里程碑只发一次、重复与乱序读数、节流批处理、并发投递、写库失败重试
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from ecoquest.core.errors import StoreUnavailable
from ecoquest.core.events import EventType
from ecoquest.storage.database import Database
from ecoquest.storage.models import (
    EfficiencyObjective, Operator, QuestStatus, ReduceConsumptionObjective, TimeWindow,
    TimeWindowObjective, TotalPowerCondition,
)
from ecoquest.system.progress import (
    count_periods, efficiency_threshold, longest_run, objective_percentage, reduce_consumption,
)

START = datetime(2024, 1, 1, 8, 0)


def _collect(bus, event_type):
    seen = []

    async def handler(event):
        seen.append(event)

    bus.on(event_type, handler)
    return seen


class TestProgressFunctions:

    def test_longest_run(self):
        assert longest_run(set()) == (0, 0)
        assert longest_run({"2024-01-01", "2024-01-02", "2024-01-04"}) == (2, 1)
        assert longest_run({"2024-01-01", "2024-01-02", "2024-01-03"}) == (3, 3)

    def test_reduce_consumption_anchors_then_accumulates(self, make_reading):
        objective = ReduceConsumptionObjective(target=1.4, unit="kWh", baseline_rate=20.0, target_rate=18.0)
        quest = None
        assert reduce_consumption(objective, make_reading(START, energy_kwh=100.0), quest)
        assert objective.anchor_kwh == 100.0
        assert objective.current == 0.0

        # 半天用了 8 kWh，基线应为 10 kWh -> 节省 2 kWh
        later = make_reading(START + timedelta(hours=12), energy_kwh=108.0)
        assert reduce_consumption(objective, later, quest)
        assert objective.current == pytest.approx(2.0)
        assert objective_percentage(objective) == 100.0

        # 之后用多了也不回退
        worse = make_reading(START + timedelta(hours=13), energy_kwh=112.0)
        assert not reduce_consumption(objective, worse, quest)
        assert objective.current == pytest.approx(2.0)

    def test_count_periods_counts_each_hour_once(self, make_reading):
        condition = TotalPowerCondition(Operator.LE, 1.5, TimeWindow("18:00", "22:00"))
        objective = TimeWindowObjective(target=4, unit="hours", condition=condition)
        evening = START.replace(hour=19)

        assert count_periods(objective, make_reading(evening, power_kw=1.0), None)
        assert not count_periods(objective, make_reading(evening + timedelta(minutes=30), power_kw=1.0), None)
        assert not count_periods(objective, make_reading(evening + timedelta(hours=1), power_kw=3.0), None)
        assert not count_periods(objective, make_reading(START.replace(hour=12), power_kw=0.5), None)
        assert count_periods(objective, make_reading(evening + timedelta(hours=2), power_kw=0.8), None)
        assert objective.current == 2
        assert objective_percentage(objective) == 50.0

    def test_efficiency_percentage_is_relative_to_baseline(self, make_reading):
        objective = EfficiencyObjective(target=8.0, unit="score", baseline=6.0)
        assert efficiency_threshold(objective, make_reading(START, power_factor=0.7), None)
        assert objective_percentage(objective) == 50.0
        assert not efficiency_threshold(objective, make_reading(START, power_factor=0.65), None)
        assert objective.current == 7.0


class TestStreakQuest:

    async def test_three_qualifying_days_complete_once(self, engine, bus, clock, db, profiles, make_ac_quest, make_reading):
        completed = _collect(bus, EventType.QUEST_COMPLETED)
        milestones = _collect(bus, EventType.QUEST_MILESTONE)
        quest = await make_ac_quest()
        await engine.start_quest("u1", quest.id)

        percentages = []
        for day in range(3):
            clock.set(START + timedelta(days=day, hours=4))
            await engine.ingest_reading("u1", make_reading(clock.now(), ac_setpoint=24.0))
            stored = await db.get_quest(quest.id)
            percentages.append(stored.progress.percentage)

        assert percentages == [33.33, 66.67, 100.0]
        stored = await db.get_quest(quest.id)
        assert stored.status == QuestStatus.COMPLETED
        assert stored.progress.milestones_awarded == [25, 50, 75]
        assert stored.progress.streak == 3
        assert len(completed) == 1
        assert [e.data["milestone"] for e in milestones] == [25, 50, 75]

        # 完成后再送读数不会再次结算
        clock.set(START + timedelta(days=3, hours=4))
        await engine.ingest_reading("u1", make_reading(clock.now(), ac_setpoint=25.0))
        assert len(completed) == 1
        assert engine.tracker.get("u1", quest.id) is None

        profile = await profiles.get_profile("u1")
        assert profile.applied_rewards.count(f"{quest.id}:completion") == 1
        assert profile.quests_completed == 1
        assert "first_save" in profile.achievements
        assert "eco_starter" in profile.badges
        # 里程碑 10+20+30，完成 472×1.2 + 周任务 260 + 首次成就 100
        assert profile.total_points == 986

    async def test_non_qualifying_reading_does_not_move_progress(self, engine, clock, db, make_ac_quest, make_reading):
        quest = await make_ac_quest()
        await engine.start_quest("u1", quest.id)

        clock.advance(hours=4)
        await engine.ingest_reading("u1", make_reading(clock.now(), ac_setpoint=22.0))
        stored = await db.get_quest(quest.id)
        assert stored.progress.percentage == 0.0
        assert stored.progress.milestones_awarded == []

    async def test_readings_before_start_are_ignored(self, engine, clock, db, make_ac_quest, make_reading):
        quest = await make_ac_quest()
        clock.advance(hours=2)
        await engine.start_quest("u1", quest.id)

        await engine.ingest_reading("u1", make_reading(START, ac_setpoint=26.0))
        assert engine.tracker.get("u1", quest.id).progress.percentage == 0.0


class TestDuplicatesAndThrottle:

    async def test_duplicate_delivery_leaves_percentage_unchanged(self, engine, clock, make_ac_quest, make_reading):
        quest = await make_ac_quest()
        await engine.start_quest("u1", quest.id)
        clock.advance(hours=4)
        reading = make_reading(clock.now(), ac_setpoint=24.0)

        await engine.ingest_reading("u1", reading)
        first = engine.tracker.get("u1", quest.id).progress.percentage

        # 节流窗口内重复到达 -> 进缓冲
        await engine.ingest_reading("u1", reading)
        assert engine.tracker.pending(quest.id) == 1
        await engine.run_progress_cycle()
        assert engine.tracker.pending(quest.id) == 0

        # 窗口外再次到达
        clock.advance(seconds=30)
        await engine.ingest_reading("u1", reading)

        assert first == 33.33
        assert engine.tracker.get("u1", quest.id).progress.percentage == first

    async def test_buffered_readings_processed_on_progress_tick(self, engine, clock, db, make_ac_quest, make_reading):
        quest = await make_ac_quest()
        await engine.start_quest("u1", quest.id)

        clock.advance(hours=4)
        day_one = clock.now()
        await engine.ingest_reading("u1", make_reading(day_one, ac_setpoint=24.0))
        await engine.ingest_reading("u1", make_reading(day_one + timedelta(days=2), ac_setpoint=24.0))
        await engine.ingest_reading("u1", make_reading(day_one + timedelta(days=1), ac_setpoint=24.0))

        assert engine.tracker.pending(quest.id) == 2
        assert engine.tracker.get("u1", quest.id).progress.percentage == 33.33

        clock.advance(seconds=60)
        await engine.run_progress_cycle()
        stored = await db.get_quest(quest.id)
        assert stored.status == QuestStatus.COMPLETED
        assert stored.progress.percentage == 100.0

    async def test_large_buffer_processed_in_batches(self, engine, clock, make_quest, make_reading):
        engine.tracker.batch_limit = 2
        quest = await make_quest("peak-hour-avoidance")
        await engine.start_quest("u1", quest.id)

        clock.advance(hours=11)  # 19:00
        evening = clock.now()
        await engine.ingest_reading("u1", make_reading(evening, power_kw=0.5))
        for days, hours in ((1, 0), (1, 1), (1, 2), (2, 0), (2, 1)):
            at = evening + timedelta(days=days, hours=hours)
            await engine.ingest_reading("u1", make_reading(at, power_kw=0.5))
        assert engine.tracker.pending(quest.id) == 5

        await engine.run_progress_cycle()
        tracked = engine.tracker.get("u1", quest.id)
        # 每批两条，五条缓冲读数分三批全部处理，加上第一条共 6 个小时
        assert tracked.objectives[0].current == 6
        assert engine.tracker.pending(quest.id) == 0


class TestMonotonicity:

    async def test_out_of_order_readings_never_lower_progress(self, engine, clock, db, make_quest, make_reading):
        # 日基线 22 kWh，目标节省 2.2 kWh
        quest = await make_quest("total-consumption-reduction")
        await engine.start_quest("u1", quest.id)
        day = clock.now()

        seen = []
        for hour, energy in ((10, 100.0), (22, 109.0), (16, 106.0), (9, 99.5)):
            clock.advance(seconds=30)
            await engine.ingest_reading("u1", make_reading(day.replace(hour=hour), energy_kwh=energy))
            seen.append(engine.tracker.get("u1", quest.id).progress.percentage)
        # 半天用 9 kWh 节省 2 kWh；更早的读数只移动锚点，不降低进度
        assert seen == [0.0, 90.91, 90.91, 90.91]

        clock.advance(seconds=30)
        await engine.ingest_reading("u1", make_reading(day.replace(hour=23), energy_kwh=110.0))
        stored = await db.get_quest(quest.id)
        assert stored.status == QuestStatus.COMPLETED
        assert stored.progress.percentage == 100.0
        assert stored.progress.milestones_awarded == [25, 50, 75]

    async def test_concurrent_delivery_for_one_user(self, engine, clock, db, profiles, make_ac_quest, make_reading):
        quest = await make_ac_quest()
        await engine.start_quest("u1", quest.id)
        clock.advance(hours=4)
        day_one = clock.now()

        readings = [make_reading(day_one + timedelta(days=d), ac_setpoint=24.0) for d in (2, 0, 1, 1, 0)]
        await asyncio.gather(*(engine.ingest_reading("u1", r) for r in readings))

        # 同一时刻到达：只有一条被接受，其余进缓冲
        tracked = engine.tracker.get("u1", quest.id)
        assert tracked.progress.percentage == 33.33
        assert tracked.progress.milestones_awarded == [25]
        assert engine.tracker.pending(quest.id) == 4

        clock.advance(seconds=60)
        await engine.run_progress_cycle()
        stored = await db.get_quest(quest.id)
        assert stored.status == QuestStatus.COMPLETED
        assert stored.progress.milestones_awarded == [25, 50, 75]

        profile = await profiles.get_profile("u1")
        assert profile.quests_completed == 1
        assert sorted(profile.applied_rewards) == sorted(
            [f"{quest.id}:milestone:{m}" for m in (25, 50, 75)] + [f"{quest.id}:completion"]
        )


class FlakyDatabase(Database):
    """save_quest 按需失败一次"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_next = False

    async def save_quest(self, quest):
        if self.fail_next:
            self.fail_next = False
            raise StoreUnavailable("disk full")
        await super().save_quest(quest)


class TestPersistenceFailure:

    @pytest.fixture
    async def db(self):
        database = FlakyDatabase(":memory:")
        await database.connect()
        yield database
        await database.close()

    async def test_failed_save_is_retried_without_double_reward(self, engine, db, profiles, clock, make_ac_quest, make_reading):
        quest = await make_ac_quest()
        await engine.start_quest("u1", quest.id)

        db.fail_next = True
        clock.advance(hours=4)
        await engine.ingest_reading("u1", make_reading(clock.now(), ac_setpoint=24.0))

        # 内存状态未被替换，读数回到缓冲
        assert engine.tracker.get("u1", quest.id).progress.percentage == 0.0
        assert engine.tracker.pending(quest.id) == 1
        assert (await db.get_quest(quest.id)).progress.percentage == 0.0

        clock.advance(seconds=60)
        await engine.run_progress_cycle()
        assert engine.tracker.get("u1", quest.id).progress.percentage == 33.33
        assert (await db.get_quest(quest.id)).progress.milestones_awarded == [25]

        profile = await profiles.get_profile("u1")
        assert profile.total_points == 10
        assert profile.applied_rewards == [f"{quest.id}:milestone:25"]

    async def test_failure_is_confined_to_one_quest(self, engine, db, clock, make_ac_quest, make_quest, make_reading):
        ac = await make_ac_quest()
        total = await make_quest("total-consumption-reduction")
        await engine.start_quest("u1", ac.id)
        await engine.start_quest("u1", total.id)

        # 第一个任务写库失败，第二个任务照常处理同一条读数
        db.fail_next = True
        clock.advance(hours=4)
        await engine.ingest_reading("u1", make_reading(clock.now(), energy_kwh=50.0, ac_setpoint=24.0))

        assert engine.tracker.pending(ac.id) == 1
        assert engine.tracker.pending(total.id) == 0
        assert engine.tracker.get("u1", total.id).objectives[0].anchor_kwh == 50.0
        assert (await db.get_quest(total.id)).objectives[0].anchor_kwh == 50.0
