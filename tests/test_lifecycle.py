"""
生命周期测试
并发上限、重复接受、不存在的任务/模板、过期不发奖励、只向前迁移、补位生成
"""

import dataclasses
from datetime import datetime, timedelta

import pytest

from ecoquest.core.config import QuestsConfig
from ecoquest.core.errors import (
    AlreadyActive, CapReached, InvalidTransition, QuestNotFound, TemplateNotFound,
)
from ecoquest.core.events import EventType
from ecoquest.storage.models import QuestStatus, UsageSnapshot
from ecoquest.system.quest_engine import QuestEngine

START = datetime(2024, 1, 1, 8, 0)


def _collect(bus, event_type):
    seen = []

    async def handler(event):
        seen.append(event)

    bus.on(event_type, handler)
    return seen


class TestStartQuest:

    async def test_cap_enforced_on_start(self, engine, make_quest):
        quests = [
            await make_quest("ac-temperature-optimization", device_usage=9.5, setpoint=22.0),
            await make_quest("lighting-efficiency", device_usage=0.6),
            await make_quest("total-consumption-reduction"),
            await make_quest("efficiency-improvement"),
        ]
        await engine.start_quest("u1", quests[0].id)
        await engine.start_quest("u1", quests[1].id)
        assert len(await engine.get_active_quests("u1")) == 2

        third = await engine.start_quest("u1", quests[2].id)
        assert third.status == QuestStatus.ACTIVE

        with pytest.raises(CapReached):
            await engine.start_quest("u1", quests[3].id)
        assert (await engine.store.get_quest(quests[3].id)).status == QuestStatus.AVAILABLE

    async def test_start_twice_is_already_active(self, engine, make_ac_quest):
        quest = await make_ac_quest()
        await engine.start_quest("u1", quest.id)
        with pytest.raises(AlreadyActive):
            await engine.start_quest("u1", quest.id)

    async def test_same_template_cannot_run_twice(self, engine, make_ac_quest):
        first = await make_ac_quest()
        second = await make_ac_quest()
        await engine.start_quest("u1", first.id)
        with pytest.raises(AlreadyActive):
            await engine.start_quest("u1", second.id)

    async def test_unknown_quest(self, engine, make_ac_quest):
        with pytest.raises(QuestNotFound):
            await engine.start_quest("u1", "missing")

        other = await make_ac_quest(user_id="u2")
        with pytest.raises(QuestNotFound):
            await engine.start_quest("u1", other.id)

    async def test_unknown_template(self, engine, db, make_ac_quest):
        quest = await make_ac_quest()
        ghost = dataclasses.replace(quest, id="ghost-1", template_id="ghost")
        await db.save_quest(ghost)
        with pytest.raises(TemplateNotFound):
            await engine.start_quest("u1", ghost.id)

    async def test_start_resets_validity_window(self, engine, clock, make_ac_quest):
        quest = await make_ac_quest()
        clock.advance(hours=30)
        started = await engine.start_quest("u1", quest.id)
        assert started.started_at == clock.now()
        assert started.valid_from == clock.now()
        assert started.valid_until == clock.now() + timedelta(hours=168)

    async def test_stale_available_quest_expires_instead_of_starting(self, engine, clock, make_quest):
        quest = await make_quest("lighting-efficiency", device_usage=0.6)
        clock.advance(hours=25)
        with pytest.raises(InvalidTransition):
            await engine.start_quest("u1", quest.id)
        assert (await engine.store.get_quest(quest.id)).status == QuestStatus.EXPIRED


class TestExpiry:

    async def test_overdue_quest_expires_without_reward(self, engine, db, bus, clock, profiles, make_ac_quest):
        expired = _collect(bus, EventType.QUEST_EXPIRED)
        completed = _collect(bus, EventType.QUEST_COMPLETED)
        quest = await make_ac_quest()
        quest.progress.percentage = 80.0
        await db.save_quest(quest)
        await engine.start_quest("u1", quest.id)

        clock.advance(hours=169)
        await engine.run_progress_cycle()

        stored = await db.get_quest(quest.id)
        assert stored.status == QuestStatus.EXPIRED
        assert stored.progress.percentage == 80.0
        assert len(expired) == 1
        assert completed == []
        assert engine.tracker.get("u1", quest.id) is None
        assert (await profiles.get_profile("u1")).total_points == 0

    async def test_quest_inside_window_is_kept(self, engine, clock, make_ac_quest):
        quest = await make_ac_quest()
        await engine.start_quest("u1", quest.id)
        clock.advance(hours=100)
        await engine.run_progress_cycle()
        assert engine.tracker.get("u1", quest.id).status == QuestStatus.ACTIVE


class TestTransitions:

    async def test_terminal_states_are_final(self, engine, clock, make_ac_quest):
        quest = await make_ac_quest()
        await engine.start_quest("u1", quest.id)
        clock.advance(hours=200)
        await engine.run_progress_cycle()

        with pytest.raises(InvalidTransition):
            await engine.start_quest("u1", quest.id)
        with pytest.raises(InvalidTransition):
            await engine.complete_quest("u1", quest.id)
        with pytest.raises(InvalidTransition):
            await engine.abandon_quest("u1", quest.id)

    async def test_abandon_marks_failed(self, engine, bus, db, make_ac_quest):
        failed = _collect(bus, EventType.QUEST_FAILED)
        quest = await make_ac_quest()
        await engine.start_quest("u1", quest.id)

        result = await engine.abandon_quest("u1", quest.id)
        assert result.status == QuestStatus.FAILED
        assert (await db.get_quest(quest.id)).status == QuestStatus.FAILED
        assert engine.tracker.get("u1", quest.id) is None
        assert len(failed) == 1

    async def test_complete_requires_active(self, engine, make_ac_quest):
        quest = await make_ac_quest()
        with pytest.raises(InvalidTransition):
            await engine.complete_quest("u1", quest.id)

    async def test_manual_completion_rewards_once(self, engine, profiles, make_ac_quest):
        quest = await make_ac_quest()
        await engine.start_quest("u1", quest.id)

        done = await engine.complete_quest("u1", quest.id)
        assert done.status == QuestStatus.COMPLETED
        points = (await profiles.get_profile("u1")).total_points
        assert points > 0

        with pytest.raises(InvalidTransition):
            await engine.complete_quest("u1", quest.id)
        assert (await profiles.get_profile("u1")).total_points == points


class TestGeneration:

    async def test_generation_fills_open_slots(self, engine, snapshot):
        quests = await engine.generate_quests_for_user("u1", snapshot)
        assert [q.template_id for q in quests] == [
            "high-consumption-device",
            "efficiency-improvement",
            "total-consumption-reduction",
        ]
        assert all(q.status == QuestStatus.AVAILABLE for q in quests)

        # 没有空位时不再生成
        assert await engine.generate_quests_for_user("u1", snapshot) == []

    async def test_generation_is_deterministic(self, engine, snapshot):
        first = await engine.generate_quests_for_user("a", snapshot)
        second = await engine.generate_quests_for_user("b", snapshot)
        assert [q.template_id for q in first] == [q.template_id for q in second]
        assert [q.reward_points for q in first] == [q.reward_points for q in second]

    async def test_completion_tops_up_available_pool(self, db, profiles, bus, clock, snapshot, monkeypatch):
        engine = QuestEngine(db, profiles, bus, config=QuestsConfig(auto_generate=True), clock=clock)
        quests = await engine.generate_quests_for_user("u1", snapshot)
        target = next(q for q in quests if q.template_id == "efficiency-improvement")
        await engine.start_quest("u1", target.id)

        evening = UsageSnapshot(peak_usage_time="19:00", total_consumption=18.0)
        monkeypatch.setattr(engine.usage, "snapshot_for", lambda user_id: evening)
        await engine.complete_quest("u1", target.id)

        available = await engine.get_available_quests("u1")
        assert sorted(q.template_id for q in available) == [
            "high-consumption-device",
            "peak-hour-avoidance",
            "total-consumption-reduction",
        ]

    async def test_generation_cycle_covers_registered_users(self, engine, clock, monkeypatch, snapshot):
        monkeypatch.setattr(engine.usage, "snapshot_for", lambda user_id: snapshot)
        await engine.open_session("u1")
        await engine.open_session("u2")
        await engine.run_generation_cycle()
        assert len(await engine.get_available_quests("u1")) == 3
        assert len(await engine.get_available_quests("u2")) == 3
