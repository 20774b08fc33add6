"""Tests for the rate table (cyberhub/services/pricing.py)."""

import pytest

from cyberhub.exceptions import RecordNotFoundError


class TestPricing:
    async def test_inactive_by_default(self, pricing):
        created = await pricing.create_pricing(80)
        assert created.active is False
        assert await pricing.get_active() is None

    async def test_activating_deactivates_others(self, db, pricing):
        old = await pricing.create_pricing(80, active=True)
        new = await pricing.create_pricing(120, active=True)
        assert (await pricing.get_active()).id == new.id
        assert (await db.pricing.find_unique({"id": old.id})).active is False
        assert await db.pricing.count({"active": True}) == 1

    async def test_update_can_switch_active_rate(self, db, pricing):
        first = await pricing.create_pricing(80, active=True)
        second = await pricing.create_pricing(120)
        updated = await pricing.update_pricing(second.id, price_per_minute=150, active=True)
        assert updated.price_per_minute == 150
        assert updated.active is True
        assert (await db.pricing.find_unique({"id": first.id})).active is False

    async def test_update_price_only(self, pricing):
        rate = await pricing.create_pricing(80, active=True)
        updated = await pricing.update_pricing(rate.id, price_per_minute=90)
        assert updated.price_per_minute == 90
        assert updated.active is True

    async def test_list_and_delete(self, pricing):
        a = await pricing.create_pricing(80)
        b = await pricing.create_pricing(90)
        assert {p.id for p in await pricing.list_pricing()} == {a.id, b.id}

        await pricing.delete_pricing(a.id)
        assert [p.id for p in await pricing.list_pricing()] == [b.id]
        with pytest.raises(RecordNotFoundError):
            await pricing.delete_pricing(a.id)

    async def test_unknown_rate(self, pricing):
        with pytest.raises(RecordNotFoundError):
            await pricing.update_pricing("missing", price_per_minute=1)
