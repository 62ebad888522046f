"""
演示模拟器
模拟几天的家庭用电，展示任务生成、接受、进度与奖励的完整流程
用预设读数驱动引擎，无需真实电表
"""

import asyncio
import random
from datetime import datetime, timedelta

import httpx


API_BASE = "http://127.0.0.1:8888"

# 一天的用电剧本
DAILY_SCENARIO = [
    # (时刻, 总功率 kW, 空调设定温度, 灯具功率 kW, 功率因数)
    (7, 1.2, None, 0.04, 0.82),
    (9, 0.6, None, 0.0, 0.85),
    (12, 0.9, 24, 0.0, 0.88),
    (15, 1.1, 25, 0.02, 0.9),
    (18, 1.8, 24, 0.04, 0.86),
    (19, 1.6, 24, 0.04, 0.87),
    (20, 1.4, 25, 0.03, 0.9),
    (21, 1.2, 24, 0.03, 0.91),
    (23, 0.4, None, 0.0, 0.93),
]

# 生成任务时使用的用电概况
DEMO_SNAPSHOT = {
    "devices": [
        {"device_id": "ac_bedroom", "device_type": "ac", "name": "Bedroom AC", "average_usage": 9.5, "setpoint": 22},
        {"device_id": "geyser", "device_type": "appliance", "name": "Water Heater", "average_usage": 6.2},
        {"device_id": "light_hall", "device_type": "light", "name": "Hall Light", "average_usage": 0.4},
    ],
    "peak_usage_time": "19:00",
    "total_consumption": 24.0,
    "efficiency_score": 7.2,
    "trend": "increasing",
    "potential_savings": 3.6,
}


def _reading(at: datetime, energy: float, power: float, setpoint, light: float, pf: float) -> dict:
    devices = {
        "light_hall": {"device_type": "light", "power_kw": light, "energy_kwh": 0.0, "name": "Hall Light"},
    }
    if setpoint is not None:
        devices["ac_bedroom"] = {
            "device_type": "ac", "power_kw": round(power * 0.6, 3), "energy_kwh": 0.0,
            "setpoint": setpoint, "name": "Bedroom AC",
        }
    return {
        "timestamp": at.isoformat(),
        "power_kw": power,
        "energy_kwh": round(energy, 3),
        "power_factor": pf,
        "meter_id": "demo-meter",
        "devices": devices,
    }


async def run_demo(user_id: str = "demo", days: int = 3):
    """运行完整演示"""
    print("=" * 60)
    print("  ⚡ EcoQuest 演示模式")
    print(f"  模拟 {days} 天的家庭用电")
    print("=" * 60)
    print()

    async with httpx.AsyncClient(base_url=API_BASE, timeout=30) as client:
        try:
            resp = await client.get("/api/status")
            status = resp.json()
            print(f"  🟢 系统在线: {status['system']['name']} v{status['system']['version']}")
        except httpx.HTTPError as e:
            print(f"  ❌ 系统未运行: {e}")
            print("  请先启动系统: python3 -m ecoquest.core")
            return

        resp = await client.post(f"/api/users/{user_id}/quests/generate", json=DEMO_SNAPSHOT)
        quests = resp.json()["quests"]
        print(f"  🆕 生成了 {len(quests)} 个任务")
        for q in quests:
            resp = await client.post(f"/api/users/{user_id}/quests/{q['id']}/start")
            if resp.status_code == 200:
                print(f"    ⚔️ 接受: {q['title']} (+{q['reward_points']} pts)")
            else:
                print(f"    ❌ {q['title']}: {resp.json().get('error')}")
        print()

        start = datetime.now().replace(minute=0, second=0, microsecond=0) + timedelta(minutes=1)
        energy = 0.0
        last_at = start
        for day in range(days):
            for hour, power, setpoint, light, pf in DAILY_SCENARIO:
                at = start + timedelta(days=day, hours=hour - start.hour)
                if at < start:
                    at += timedelta(days=1)
                power = round(power * random.uniform(0.9, 1.05), 2)
                energy += power * max(0.0, (at - last_at).total_seconds() / 3600)
                last_at = at
                await client.post(
                    f"/api/users/{user_id}/readings",
                    json=_reading(at, energy, power, setpoint, light, pf),
                )
                print(f"  Day {day + 1} {at:%H:%M}  {power:>4.2f} kW  pf={pf:.2f}")
                await asyncio.sleep(0.2)

        print()
        print("=" * 60)
        resp = await client.get(f"/api/users/{user_id}/quests")
        for q in resp.json()["active"]:
            print(f"  [{q['difficulty']}] {q['title']}  {q['percentage']:.0f}%")

        resp = await client.get(f"/api/users/{user_id}/profile")
        data = resp.json()
        p = data["profile"]
        print()
        print(f"  ⚡ {p['user_id']}  Lv.{p['level']}  [{data['rank']['title']}]")
        print(f"  ⭐ {p['total_points']} pts | 🎯 {p['quests_completed']} 个任务完成")

        resp = await client.get(f"/api/users/{user_id}/notifications")
        notifications = resp.json()["notifications"]
        if notifications:
            print()
            print("  📢 通知:")
            for n in notifications[-8:]:
                print(f"    {n['icon']} {n['title']}: {n['message']}")

        print()
        print("=" * 60)
        print("  演示完成！")
        print("=" * 60)


if __name__ == "__main__":
    asyncio.run(run_demo())
