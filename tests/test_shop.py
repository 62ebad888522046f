"""
奖励商店测试
"""

import pytest

from ecoquest.core.errors import InsufficientPoints, NotFoundError, QuestEngineError
from ecoquest.core.events import EventType
from ecoquest.storage.models import RewardResult
from ecoquest.system.shop import RewardsShop


@pytest.fixture
def shop(profiles, bus):
    return RewardsShop(profiles, bus)


async def _grant(profiles, points, reward_id="grant"):
    await profiles.apply_reward(RewardResult(id=reward_id, user_id="u1", points=points))


class TestRewardsShop:

    async def test_listing_for_new_user(self, shop):
        items = {i["id"]: i for i in await shop.get_shop_items("u1")}
        assert items["virtual_badge_eco_warrior"]["available"] is True
        assert items["virtual_badge_eco_warrior"]["affordable"] is False
        assert items["real_solar_consultation"]["available"] is False

    async def test_redeem(self, shop, profiles, bus):
        redeemed = []

        async def on_redeemed(event):
            redeemed.append(event.data["item_id"])

        bus.on(EventType.ITEM_REDEEMED, on_redeemed)
        await _grant(profiles, 600)

        result = await shop.redeem("u1", "virtual_badge_eco_warrior")
        assert result["points_left"] == 100
        profile = await profiles.get_profile("u1")
        assert profile.points == 100
        # 消费不影响累计积分与等级
        assert profile.total_points == 600
        assert redeemed == ["virtual_badge_eco_warrior"]

    async def test_insufficient_points(self, shop, profiles):
        await _grant(profiles, 100)
        with pytest.raises(InsufficientPoints) as exc:
            await shop.redeem("u1", "real_discount_led")
        assert (exc.value.needed, exc.value.available) == (800, 100)

    async def test_unknown_item(self, shop):
        with pytest.raises(NotFoundError):
            await shop.redeem("u1", "golden_toaster")

    async def test_level_requirement(self, shop, profiles):
        await _grant(profiles, 900)
        with pytest.raises(QuestEngineError, match="requires level 3"):
            await shop.redeem("u1", "virtual_theme_solar")

    async def test_one_time_items(self, shop, profiles):
        await _grant(profiles, 2000)
        await shop.redeem("u1", "virtual_badge_eco_warrior")
        with pytest.raises(QuestEngineError, match="already redeemed"):
            await shop.redeem("u1", "virtual_badge_eco_warrior")

        # 实物优惠可重复兑换
        await shop.redeem("u1", "real_discount_led")
        items = {i["id"]: i for i in await shop.get_shop_items("u1")}
        assert items["virtual_badge_eco_warrior"]["available"] is False
        assert items["real_discount_led"]["available"] is True
