import asyncio

import pytest

from rafflepay.model.unit import AVAILABLE, RESERVED
from rafflepay.reclaimer import ExpiryReclaimer

from .conftest import INVENTORY


async def unit_status(store):
    return {u["number"]: u["status"] for u in await store.list_all()}


class FlakyStore:
    """Fails the first sweep, then finds nothing to release."""

    def __init__(self):
        self.calls = 0

    async def release_expired_before(self, cutoff):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("database went away")
        return {}


class TestSweep:
    @pytest.mark.asyncio
    async def test_reservation_survives_until_timeout(
        self, engine, store, reclaimer, clock, buyer
    ):
        order = await engine.reserve_units([1, 2, 3, 4, 5], buyer)

        clock.advance(50 * 60)
        assert await reclaimer.sweep() == {}
        assert {(await unit_status(store))[n] for n in range(1, 6)} \
            == {RESERVED}

        clock.advance(20 * 60)
        released = await reclaimer.sweep()

        assert released == {order["order_reference"]: [1, 2, 3, 4, 5]}
        units = await store.list_all()
        for u in units[:5]:
            assert u == {"number": u["number"], "status": AVAILABLE,
                         "buyer_name": None, "buyer_phone": None}
        assert await store.find_by_order_reference(
            order["order_reference"]) == []
        assert await store.find_by_payment_handle(
            order["payment_handle"]) == []

    @pytest.mark.asyncio
    async def test_exact_timeout_is_expired(
        self, engine, store, reclaimer, clock, buyer
    ):
        await engine.reserve_units([6], buyer)
        assert await reclaimer.sweep(now=clock() + 3599) == {}
        released = await reclaimer.sweep(now=clock() + 3600)
        assert list(released.values()) == [[6]]

    @pytest.mark.asyncio
    async def test_only_stale_orders_are_released(
        self, engine, store, reclaimer, clock, buyer, other_buyer
    ):
        old = await engine.reserve_units([1], buyer)
        clock.advance(30 * 60)
        young = await engine.reserve_units([2], other_buyer)
        clock.advance(40 * 60)

        released = await reclaimer.sweep()

        assert released == {old["order_reference"]: [1]}
        units = await unit_status(store)
        assert units[1] == AVAILABLE
        assert units[2] == RESERVED
        assert [r["number"] for r in await store.find_by_order_reference(
            young["order_reference"])] == [2]

    @pytest.mark.asyncio
    async def test_released_hook(self, engine, store, clock, buyer):
        seen = []

        async def on_released(released):
            seen.append(released)

        reclaimer = ExpiryReclaimer(store, timeout_seconds=60,
                                    clock=clock, on_released=on_released)
        order = await engine.reserve_units([3], buyer)
        await reclaimer.sweep()
        assert seen == []
        clock.advance(61)
        await reclaimer.sweep()
        assert seen == [{order["order_reference"]: [3]}]


class TestBackgroundTask:
    @pytest.mark.asyncio
    async def test_start_sweeps_immediately(
        self, engine, store, clock, buyer
    ):
        await engine.reserve_units([7, 8], buyer)
        clock.advance(2 * 3600)
        reclaimer = ExpiryReclaimer(store, timeout_seconds=3600,
                                    period_seconds=3600, clock=clock)

        reclaimer.start()
        try:
            for _ in range(200):
                if (await store.summary())["available"] == INVENTORY:
                    break
                await asyncio.sleep(0.01)
            assert reclaimer.running
            await asyncio.sleep(0.05)
        finally:
            await reclaimer.stop()

        assert (await store.summary())["available"] == INVENTORY
        assert not reclaimer.running

    @pytest.mark.asyncio
    async def test_failed_sweep_does_not_stop_the_loop(self):
        flaky = FlakyStore()
        reclaimer = ExpiryReclaimer(flaky, period_seconds=0.01)
        reclaimer.start()
        try:
            for _ in range(200):
                if flaky.calls >= 3:
                    break
                await asyncio.sleep(0.01)
        finally:
            await reclaimer.stop()
        assert flaky.calls >= 3

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_is_safe(self, store):
        reclaimer = ExpiryReclaimer(store, period_seconds=3600)
        await reclaimer.stop()
        task = reclaimer.start()
        assert reclaimer.start() is task
        await asyncio.sleep(0.05)
        await reclaimer.stop()
        assert task.cancelled() or task.done()
