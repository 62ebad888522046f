"""
FastAPI Web 服务
任务 / 档案 / 商店 API + WebSocket 进度推送
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from ..core.errors import AlreadyActive, CapReached, InvalidTransition, NotFoundError, QuestEngineError
from ..core.profile import level_progress, rank_for
from ..storage.models import Difficulty, Reading, UsageSnapshot, local_naive
from ..system.points import PointsContext, compute_points

logger = logging.getLogger(__name__)


# ── Pydantic Models ────────────────────────────────

class DeviceReadingIn(BaseModel):
    device_type: str
    power_kw: float = 0.0
    energy_kwh: float = 0.0
    setpoint: Optional[float] = None
    name: str = ""


class ReadingIn(BaseModel):
    timestamp: datetime
    power_kw: float
    energy_kwh: float
    power_factor: float = Field(default=1.0, ge=0.0, le=1.0)
    meter_id: str = ""
    devices: dict[str, DeviceReadingIn] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def to_local_time(cls, value: datetime) -> datetime:
        return local_naive(value)


class DeviceUsageIn(BaseModel):
    device_id: str
    device_type: str
    name: str = ""
    average_usage: float = 0.0
    setpoint: Optional[float] = None


class SnapshotIn(BaseModel):
    devices: list[DeviceUsageIn] = Field(default_factory=list)
    peak_usage_time: str = "00:00"
    total_consumption: float = 0.0
    efficiency_score: float = 10.0
    trend: str = "stable"
    potential_savings: float = 0.0


class PointsRequest(BaseModel):
    action: str
    level: int = 1
    streak: int = 0
    time_of_day: str = "offPeak"
    difficulty: Difficulty = Difficulty.EASY


# ── App ────────────────────────────────────────────

def create_app(system) -> FastAPI:
    """创建绑定到某个系统实例的应用；生命周期随应用启停"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await system.startup()
        try:
            yield
        finally:
            await system.shutdown()

    app = FastAPI(title=system.config.system.name, version=system.config.system.version, lifespan=lifespan)
    app.state.system = system

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse({"error": str(exc), "kind": exc.kind}, status_code=404)

    @app.exception_handler(QuestEngineError)
    async def engine_error(request: Request, exc: QuestEngineError):
        status = 409 if isinstance(exc, (AlreadyActive, CapReached, InvalidTransition)) else 400
        return JSONResponse({"error": str(exc), "type": type(exc).__name__}, status_code=status)

    @app.exception_handler(KeyError)
    async def unknown_key(request: Request, exc: KeyError):
        return JSONResponse({"error": str(exc.args[0]) if exc.args else "unknown key"}, status_code=400)

    @app.get("/api/status")
    async def get_status():
        """系统状态"""
        engine = system.quest_engine
        return {
            "system": {
                "name": system.config.system.name,
                "version": system.config.system.version,
                "running": system.running,
                "uptime": str(datetime.now() - system.start_time) if system.start_time else None,
            },
            "users": engine.supervisor.users,
            "max_active_quests": engine.config.max_active_quests,
        }

    # ── 会话 ──────────────────────────────────────────

    @app.post("/api/users/{user_id}/session")
    async def open_session(user_id: str):
        """打开会话：加载进行中的任务并订阅遥测"""
        await system.quest_engine.open_session(user_id)
        return {"success": True, "user_id": user_id}

    @app.delete("/api/users/{user_id}/session")
    async def close_session(user_id: str):
        await system.quest_engine.close_session(user_id)
        return {"success": True, "user_id": user_id}

    # ── 任务 ──────────────────────────────────────────

    @app.get("/api/users/{user_id}/quests")
    async def get_quests(user_id: str):
        """进行中与可接受的任务"""
        engine = system.quest_engine
        active = await engine.get_active_quests(user_id)
        available = await engine.get_available_quests(user_id)
        return {
            "active": [q.to_dict() for q in active],
            "available": [q.to_dict() for q in available],
        }

    @app.get("/api/users/{user_id}/quests/history")
    async def get_history(user_id: str):
        quests = await system.quest_engine.get_quest_history(user_id)
        return {"quests": [q.to_dict() for q in quests]}

    @app.post("/api/users/{user_id}/quests/generate")
    async def generate_quests(user_id: str, body: Optional[SnapshotIn] = None):
        """生成任务；可选地提供用电概况，否则用近期读数推算"""
        snapshot = UsageSnapshot.from_dict(body.model_dump()) if body else None
        quests = await system.quest_engine.generate_quests_for_user(user_id, snapshot)
        return {"quests": [q.to_dict() for q in quests]}

    @app.post("/api/users/{user_id}/quests/{quest_id}/start")
    async def start_quest(user_id: str, quest_id: str):
        quest = await system.quest_engine.start_quest(user_id, quest_id)
        return {"success": True, "quest": quest.to_dict()}

    @app.post("/api/users/{user_id}/quests/{quest_id}/complete")
    async def complete_quest(user_id: str, quest_id: str):
        """手动完成任务"""
        quest = await system.quest_engine.complete_quest(user_id, quest_id)
        return {"success": True, "quest": quest.to_dict()}

    @app.post("/api/users/{user_id}/quests/{quest_id}/abandon")
    async def abandon_quest(user_id: str, quest_id: str):
        quest = await system.quest_engine.abandon_quest(user_id, quest_id)
        return {"success": True, "quest": quest.to_dict()}

    @app.post("/api/users/{user_id}/readings", status_code=202)
    async def post_reading(user_id: str, body: ReadingIn):
        """上报电表读数；立即返回，后台处理"""
        reading = Reading.from_dict(body.model_dump())
        system.quest_engine.record_reading(user_id, reading)
        return {"accepted": True, "timestamp": reading.timestamp.isoformat()}

    @app.get("/api/users/{user_id}/usage")
    async def get_usage(user_id: str):
        return system.quest_engine.snapshot_for(user_id).to_dict()

    # ── 档案 ──────────────────────────────────────────

    @app.get("/api/users/{user_id}/profile")
    async def get_profile(user_id: str):
        profile = await system.profiles.get_profile(user_id)
        return {
            "profile": profile.to_dict(),
            "level": level_progress(profile.total_points),
            "rank": rank_for(profile.total_points),
        }

    @app.get("/api/users/{user_id}/achievements")
    async def get_achievements(user_id: str):
        profile = await system.profiles.get_profile(user_id)
        return {
            "achievements": system.achievements.get_all(profile),
            "badges": system.achievements.get_badges(profile),
        }

    @app.get("/api/users/{user_id}/report")
    async def get_report(user_id: str):
        profile = await system.profiles.get_profile(user_id)
        return await system.reports.generate_user_report(profile)

    @app.get("/api/users/{user_id}/notifications")
    async def get_notifications(user_id: str):
        return {"notifications": system.notifications.pop_pending(user_id)}

    @app.get("/api/users/{user_id}/activity")
    async def get_activity(user_id: str, limit: int = 50):
        return {"activity": await system.db.get_activity(user_id, limit)}

    # ── 商店 ──────────────────────────────────────────

    @app.get("/api/users/{user_id}/shop")
    async def get_shop(user_id: str):
        return {"items": await system.shop.get_shop_items(user_id)}

    @app.post("/api/users/{user_id}/shop/{item_id}/redeem")
    async def redeem_item(user_id: str, item_id: str):
        result = await system.shop.redeem(user_id, item_id)
        return {"success": True, **result}

    # ── 规则 ──────────────────────────────────────────

    @app.get("/api/templates")
    async def get_templates():
        return {"templates": [t.to_dict() for t in system.quest_engine.registry.all()]}

    @app.post("/api/points/calculate")
    async def calculate_points(body: PointsRequest):
        context = PointsContext(
            level=body.level,
            streak=body.streak,
            time_of_day=body.time_of_day,
            difficulty=body.difficulty,
        )
        return {"action": body.action, "points": compute_points(body.action, context)}

    # ── WebSocket ─────────────────────────────────────

    @app.websocket("/ws/{user_id}")
    async def websocket_endpoint(websocket: WebSocket, user_id: str):
        """推送该用户的任务进度；客户端可发送 {"action": "start_quest"} 等指令"""
        await websocket.accept()

        async def forward(event) -> None:
            await websocket.send_text(json.dumps(event.to_dict(), default=str))

        unsubscribe = system.quest_engine.subscribe_progress(user_id, forward)
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    await websocket.send_text(json.dumps({"error": "invalid json"}))
                    continue
                await _handle_ws_action(system, websocket, user_id, msg)
        except WebSocketDisconnect:
            logger.debug("websocket closed for %s", user_id)
        finally:
            unsubscribe()

    return app


async def _handle_ws_action(system, websocket: WebSocket, user_id: str, msg: dict) -> None:
    engine = system.quest_engine
    actions = {
        "start_quest": engine.start_quest,
        "complete_quest": engine.complete_quest,
        "abandon_quest": engine.abandon_quest,
    }
    action = actions.get(msg.get("action"))
    if action is None or not msg.get("quest_id"):
        await websocket.send_text(json.dumps({"error": f"unknown action: {msg.get('action')}"}))
        return
    try:
        quest = await action(user_id, msg["quest_id"])
    except QuestEngineError as e:
        await websocket.send_text(json.dumps({"error": str(e), "type": type(e).__name__}))
        return
    await websocket.send_text(json.dumps({"ok": True, "quest": quest.to_dict()}, default=str))
