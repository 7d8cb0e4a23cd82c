import asyncio

import pytest

from boxoffice.model.inventory import CartItem, InventoryLedger, merge_items

pytestmark = pytest.mark.anyio


@pytest.fixture
def ledger(db) -> InventoryLedger:
    return InventoryLedger(db)


def _items(*pairs):
    return [CartItem(tid, q) for tid, q in pairs]


async def _assert_bounded(ledger):
    for t in await ledger.list_types():
        assert t["sold"] + t["reserved"] <= t["total"]
        assert t["sold"] >= 0 and t["reserved"] >= 0


class TestAvailability:
    async def test_seeded_catalog(self, ledger):
        types = {t["id"]: t for t in await ledger.list_types()}
        assert set(types) == {"early-bird", "regular", "table"}
        eb = types["early-bird"]
        assert eb["name"] == "Early Bird"
        assert eb["price"] == 2500
        assert (eb["total"], eb["sold"], eb["reserved"]) == (150, 0, 0)
        assert eb["available"] == 150

    async def test_over_ask_then_direct_sell(self, ledger):
        res = await ledger.check_cart_availability(
            _items(("early-bird", 151))
        )
        assert not res.valid
        assert res.errors == ["Only 150 Early Bird tickets left"]

        assert await ledger.direct_sell(_items(("early-bird", 3)))
        assert await ledger.get_available("early-bird") == 147

    async def test_sold_out_message(self, ledger):
        assert await ledger.direct_sell(_items(("table", 20)))
        res = await ledger.check_cart_availability(_items(("table", 1)))
        assert res.errors == ["Table for 4 is sold out"]

    async def test_unknown_type(self, ledger):
        res = await ledger.check_cart_availability(_items(("backstage", 1)))
        assert not res.valid
        assert res.errors == ["Unknown ticket type: backstage"]
        assert await ledger.get("backstage") is None
        assert await ledger.get_available("backstage") == 0

    async def test_quantities_for_the_same_type_add_up(self, ledger):
        res = await ledger.check_cart_availability(
            _items(("table", 15), ("table", 6))
        )
        assert res.errors == ["Only 20 Table for 4 tickets left"]

    async def test_valid_cart(self, ledger):
        res = await ledger.check_cart_availability(
            _items(("early-bird", 2), ("table", 1))
        )
        assert res.valid
        assert res.errors == []

    async def test_reserved_counts_against_availability(self, ledger):
        assert await ledger.reserve(_items(("table", 18)))
        res = await ledger.check_cart_availability(_items(("table", 3)))
        assert res.errors == ["Only 2 Table for 4 tickets left"]


class TestReservations:
    async def test_reserve_then_release_is_reversible(self, ledger):
        before = await ledger.get("regular")
        assert await ledger.reserve(_items(("regular", 7)))
        assert (await ledger.get("regular"))["reserved"] == 7
        await ledger.release(_items(("regular", 7)))
        after = await ledger.get("regular")
        assert after["reserved"] == before["reserved"]
        assert after["sold"] == before["sold"]

    async def test_double_release_floors_at_zero(self, ledger):
        assert await ledger.reserve(_items(("regular", 2)))
        await ledger.release(_items(("regular", 2)))
        await ledger.release(_items(("regular", 2)))
        assert (await ledger.get("regular"))["reserved"] == 0

    async def test_confirm_moves_exact_quantity(self, ledger):
        assert await ledger.reserve(_items(("early-bird", 4), ("table", 1)))
        assert await ledger.reserve(_items(("early-bird", 1)))
        assert await ledger.confirm(_items(("early-bird", 4), ("table", 1)))

        eb = await ledger.get("early-bird")
        assert (eb["sold"], eb["reserved"]) == (4, 1)
        table = await ledger.get("table")
        assert (table["sold"], table["reserved"]) == (1, 0)

    async def test_reserve_is_all_or_nothing(self, ledger):
        ok = await ledger.reserve(_items(("early-bird", 2), ("table", 21)))
        assert ok is False
        assert (await ledger.get("early-bird"))["reserved"] == 0
        assert (await ledger.get("table"))["reserved"] == 0

    async def test_reserve_unknown_type_fails(self, ledger):
        assert await ledger.reserve(_items(("backstage", 1))) is False

    async def test_confirm_without_hold_still_respects_stock(self, ledger):
        assert await ledger.direct_sell(_items(("table", 19)))
        assert await ledger.confirm(_items(("table", 2))) is False
        assert await ledger.confirm(_items(("table", 1)))
        assert (await ledger.get("table"))["sold"] == 20
        await _assert_bounded(ledger)


class TestDirectSell:
    async def test_honours_outstanding_reservations(self, ledger):
        assert await ledger.reserve(_items(("table", 15)))
        assert await ledger.direct_sell(_items(("table", 6))) is False
        assert await ledger.direct_sell(_items(("table", 5)))
        table = await ledger.get("table")
        assert (table["sold"], table["reserved"]) == (5, 15)
        assert table["available"] == 0
        await _assert_bounded(ledger)

    async def test_concurrent_buyers_never_oversell(self, ledger):
        async def buy():
            return await ledger.direct_sell(_items(("table", 3)))

        results = await asyncio.gather(*(buy() for _ in range(10)))
        assert results.count(True) == 6
        table = await ledger.get("table")
        assert table["sold"] == 18
        await _assert_bounded(ledger)

    async def test_concurrent_mixed_rails(self, ledger):
        async def hold():
            return await ledger.reserve(_items(("table", 2)))

        async def sell():
            return await ledger.direct_sell(_items(("table", 2)))

        results = await asyncio.gather(
            *(hold() if i % 2 else sell() for i in range(16))
        )
        assert results.count(True) == 10
        await _assert_bounded(ledger)

    async def test_restock_returns_units(self, ledger):
        assert await ledger.direct_sell(_items(("regular", 5)))
        await ledger.restock(_items(("regular", 2)))
        assert (await ledger.get("regular"))["sold"] == 3
        await ledger.restock(_items(("regular", 10)))
        assert (await ledger.get("regular"))["sold"] == 0

    async def test_non_positive_quantity_rejected(self, ledger):
        with pytest.raises(ValueError):
            await ledger.direct_sell(_items(("regular", 0)))
        with pytest.raises(ValueError):
            await ledger.reserve(_items(("regular", -1)))


class TestAdministration:
    async def test_set_total_refuses_to_undercut_commitments(self, ledger):
        assert await ledger.direct_sell(_items(("table", 8)))
        assert await ledger.reserve(_items(("table", 4)))
        assert await ledger.set_total("table", 11) is False
        assert await ledger.set_total("table", 12)
        assert (await ledger.get("table"))["available"] == 0
        assert await ledger.set_total("table", 30)
        assert (await ledger.get("table"))["available"] == 18

    async def test_set_total_unknown_or_negative(self, ledger):
        assert await ledger.set_total("backstage", 5) is False
        with pytest.raises(ValueError):
            await ledger.set_total("table", -1)

    async def test_reset_all(self, ledger):
        assert await ledger.direct_sell(_items(("early-bird", 10)))
        assert await ledger.reserve(_items(("regular", 3)))
        await ledger.reset_all()
        stats = await ledger.stats()
        assert stats["total_sold"] == 0
        assert stats["total_reserved"] == 0
        assert stats["total_available"] == 470

    async def test_stats(self, ledger):
        assert await ledger.direct_sell(_items(("early-bird", 10)))
        assert await ledger.reserve(_items(("table", 2)))
        assert await ledger.stats() == {
            "total_tickets": 470,
            "total_sold": 10,
            "total_reserved": 2,
            "total_available": 458,
        }


def test_merge_items():
    merged = merge_items(_items(("a", 1), ("b", 2), ("a", 3)))
    assert merged == {"a": 4, "b": 2}
    with pytest.raises(ValueError):
        merge_items(_items(("a", 0)))
