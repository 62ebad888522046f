#!/usr/bin/env python3
"""
EcoQuest 命令行工具
用法:
  python3 cli.py status                 # 查看系统状态
  python3 cli.py profile USER           # 查看用户档案
  python3 cli.py quests USER            # 查看任务
  python3 cli.py generate USER          # 生成任务
  python3 cli.py start USER ID          # 接受任务
  python3 cli.py complete USER ID       # 完成任务
  python3 cli.py abandon USER ID        # 放弃任务
  python3 cli.py shop USER              # 查看商店
  python3 cli.py redeem USER ID         # 兑换物品
  python3 cli.py report USER            # 查看报告
  python3 cli.py demo [USER]            # 运行演示
"""

import os
import sys

import httpx

API = os.environ.get("ECOQUEST_API", "http://127.0.0.1:8888")


def _request(method: str, path: str, data=None) -> dict:
    try:
        r = httpx.request(method, f"{API}{path}", json=data, timeout=10)
    except httpx.HTTPError as e:
        print(f"❌ 无法连接系统: {e}")
        print("   请确保系统正在运行: python3 -m ecoquest.core")
        sys.exit(1)
    body = r.json()
    if r.status_code >= 400:
        print(f"  ❌ {body.get('error', r.status_code)}")
        sys.exit(1)
    return body


def fetch(path: str) -> dict:
    return _request("GET", path)


def post(path: str, data=None) -> dict:
    return _request("POST", path, data)


def _bar(ratio: float, length: int = 25) -> str:
    filled = int(max(0.0, min(1.0, ratio)) * length)
    return "█" * filled + "░" * (length - filled)


def _print_quest(q: dict) -> None:
    print(f"  [{q['difficulty']}] {q['title']}  ({q['status']})")
    print(f"      {q['description']}")
    print(f"      [{_bar(q['percentage'] / 100, 20)}] {q['percentage']:.0f}%"
          f"  +{q['reward_points']} pts | ID: {q['id']}")
    print()


def cmd_status():
    d = fetch("/api/status")
    s = d["system"]
    print()
    print(f"  ⚡ {s['name']} v{s['version']}")
    print(f"  状态: {'🟢 运行中' if s['running'] else '🔴 停止'}")
    print(f"  运行时间: {s.get('uptime', 'N/A')}")
    print(f"  在线用户: {', '.join(d['users']) or '-'}")
    print()


def cmd_profile(user_id: str):
    d = fetch(f"/api/users/{user_id}/profile")
    p = d["profile"]
    level = d["level"]
    print()
    print(f"  ⚡ {p['user_id']}  Lv.{p['level']}  [{d['rank']['title']}]")
    print(f"  ⭐ [{_bar(level['percentage'] / 100)}] {level['points_into_level']}/1000 pts")
    print(f"  💰 可用积分: {p['points']}")
    print(f"  🎯 已完成 {p['quests_completed']} 个任务 | 🔥 连续 {p['streak_days']} 天")
    print(f"  🔋 累计节电 {p['energy_saved_kwh']:.1f} kWh")
    if p["badges"]:
        print(f"  🏅 {', '.join(p['badges'])}")
    print()


def cmd_quests(user_id: str):
    d = fetch(f"/api/users/{user_id}/quests")
    if not d["active"] and not d["available"]:
        print("  暂无任务，试试: cli.py generate USER")
        return
    for label, quests in (("进行中", d["active"]), ("可接受", d["available"])):
        if not quests:
            continue
        print()
        print(f"  ⚔️ {label} ({len(quests)})")
        print()
        for q in quests:
            _print_quest(q)


def cmd_generate(user_id: str):
    d = post(f"/api/users/{user_id}/quests/generate")
    if not d["quests"]:
        print("  没有空位或没有合适的任务。")
        return
    print(f"  🆕 生成了 {len(d['quests'])} 个任务")
    for q in d["quests"]:
        _print_quest(q)


def cmd_transition(user_id: str, quest_id: str, action: str):
    d = post(f"/api/users/{user_id}/quests/{quest_id}/{action}")
    q = d["quest"]
    print(f"  ✅ {q['title']} -> {q['status']}")


def cmd_shop(user_id: str):
    d = fetch(f"/api/users/{user_id}/shop")
    print()
    print("  🛒 奖励商店")
    print()
    for item in d["items"]:
        if not item["available"]:
            continue
        affordable = "✅" if item["affordable"] else "❌"
        print(f"  {affordable} {item['name']} | {item['price']} pts")
        print(f"      {item['description']}")
        print(f"      ID: {item['id']}")
        print()


def cmd_redeem(user_id: str, item_id: str):
    r = post(f"/api/users/{user_id}/shop/{item_id}/redeem")
    print(f"  🛒 兑换成功: {r['name']}")
    print(f"  💰 剩余积分: {r['points_left']}")


def cmd_report(user_id: str):
    d = fetch(f"/api/users/{user_id}/report")
    print()
    print(d["summary"])
    print()


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        return

    cmd = sys.argv[1].lower()
    args = sys.argv[2:]

    if cmd == "status":
        cmd_status()
    elif cmd == "profile" and len(args) >= 1:
        cmd_profile(args[0])
    elif cmd == "quests" and len(args) >= 1:
        cmd_quests(args[0])
    elif cmd == "generate" and len(args) >= 1:
        cmd_generate(args[0])
    elif cmd in ("start", "complete", "abandon") and len(args) >= 2:
        cmd_transition(args[0], args[1], cmd)
    elif cmd == "shop" and len(args) >= 1:
        cmd_shop(args[0])
    elif cmd == "redeem" and len(args) >= 2:
        cmd_redeem(args[0], args[1])
    elif cmd == "report" and len(args) >= 1:
        cmd_report(args[0])
    elif cmd == "demo":
        import asyncio
        from demo import run_demo
        asyncio.run(run_demo(args[0] if args else "demo"))
    else:
        print(__doc__)


if __name__ == "__main__":
    main()
