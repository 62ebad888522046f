"""
奖励商店
用可消费积分兑换徽章、主题、功能升级与实物优惠
"""

import logging

from ..core.errors import InsufficientPoints, NotFoundError, QuestEngineError
from ..core.events import EventBus, EventType
from ..core.profile import ProfileManager

logger = logging.getLogger(__name__)


# 商店物品
SHOP_ITEMS = {
    # ── 虚拟物品 ──
    "virtual_badge_eco_warrior": {
        "name": "🛡️ Eco Warrior Badge",
        "description": "Show off your commitment on your profile",
        "category": "virtual",
        "price": 500,
        "level_req": 1,
        "one_time": True,
    },
    "virtual_theme_solar": {
        "name": "☀️ Solar Theme",
        "description": "A warm dashboard theme",
        "category": "virtual",
        "price": 1200,
        "level_req": 3,
        "one_time": True,
    },
    "virtual_pet_energy_dragon": {
        "name": "🐉 Energy Dragon",
        "description": "A companion that grows as you save",
        "category": "virtual",
        "price": 2500,
        "level_req": 5,
        "one_time": True,
    },
    "cosmetic_dashboard_particles": {
        "name": "✨ Dashboard Particles",
        "description": "Animated particles on your dashboard",
        "category": "cosmetic",
        "price": 1500,
        "level_req": 2,
        "one_time": True,
    },

    # ── 功能升级 ──
    "upgrade_smart_analytics": {
        "name": "📊 Smart Analytics",
        "description": "Hour-by-hour usage breakdowns",
        "category": "upgrade",
        "price": 2000,
        "level_req": 4,
        "one_time": True,
    },
    "upgrade_ai_assistant": {
        "name": "🤖 Saving Assistant",
        "description": "Personalised saving suggestions",
        "category": "upgrade",
        "price": 3500,
        "level_req": 6,
        "one_time": True,
    },

    # ── 实物奖励 ──
    "real_discount_led": {
        "name": "💡 LED Bulb Discount",
        "description": "20% off efficient LED bulbs",
        "category": "real",
        "price": 800,
        "level_req": 1,
    },
    "real_solar_consultation": {
        "name": "🔆 Solar Consultation",
        "description": "Free rooftop solar assessment",
        "category": "real",
        "price": 5000,
        "level_req": 8,
        "one_time": True,
    },
}


class RewardsShop:
    """奖励商店"""

    def __init__(self, profiles: ProfileManager, event_bus: EventBus):
        self.profiles = profiles
        self.bus = event_bus

    async def get_shop_items(self, user_id: str) -> list[dict]:
        """获取商品列表及当前用户能否兑换"""
        profile = await self.profiles.get_profile(user_id)
        items = []
        for item_id, item in SHOP_ITEMS.items():
            available = profile.level >= item["level_req"]
            if item.get("one_time") and item_id in profile.redeemed:
                available = False
            items.append({
                "id": item_id,
                "name": item["name"],
                "description": item["description"],
                "category": item["category"],
                "price": item["price"],
                "level_req": item["level_req"],
                "available": available,
                "affordable": profile.points >= item["price"],
            })
        return items

    async def redeem(self, user_id: str, item_id: str) -> dict:
        """兑换物品"""
        if item_id not in SHOP_ITEMS:
            raise NotFoundError("item", item_id)
        item = SHOP_ITEMS[item_id]
        profile = await self.profiles.get_profile(user_id)

        if profile.level < item["level_req"]:
            raise QuestEngineError(f"{item_id} requires level {item['level_req']}")
        if item.get("one_time") and item_id in profile.redeemed:
            raise QuestEngineError(f"{item_id} already redeemed")
        if profile.points < item["price"]:
            raise InsufficientPoints(item["price"], profile.points)

        profile = await self.profiles.spend_points(user_id, item["price"], item_id)
        await self.bus.emit_simple(
            EventType.ITEM_REDEEMED,
            user_id=user_id,
            item_id=item_id,
            item_name=item["name"],
            price=item["price"],
        )
        logger.info("%s redeemed %s for %d points", user_id, item_id, item["price"])
        return {
            "item_id": item_id,
            "name": item["name"],
            "points_left": profile.points,
        }
