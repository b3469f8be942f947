"""ThrottleGate のテスト"""

import asyncio

import pytest

from asana_exporter.data.throttle import ThrottleGate


class TestThrottleGate:
    """同時リクエスト数制御のテスト"""

    @pytest.mark.asyncio
    async def test_acquire_grants_immediately_below_cap(self):
        gate = ThrottleGate(3)

        permits = [await gate.acquire() for _ in range(3)]

        assert gate.in_flight == 3
        assert gate.waiting == 0
        assert len({permit.number for permit in permits}) == 3

    @pytest.mark.asyncio
    async def test_never_more_than_cap_in_flight(self):
        """10件を同時に開始しても実行中は3件まで"""
        gate = ThrottleGate(3)
        active = 0
        peak = 0

        async def worker():
            nonlocal active, peak
            async with gate.slot():
                active += 1
                peak = max(peak, active)
                for _ in range(3):
                    await asyncio.sleep(0)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(10)))

        assert peak == 3
        assert gate.in_flight == 0
        assert gate.waiting == 0

    @pytest.mark.asyncio
    async def test_fourth_request_waits_for_release(self):
        gate = ThrottleGate(3)
        permits = [await gate.acquire() for _ in range(3)]

        fourth = asyncio.ensure_future(gate.acquire())
        await asyncio.sleep(0)
        assert not fourth.done()
        assert gate.waiting == 1

        gate.release(permits[0])
        await asyncio.wait_for(fourth, timeout=1)

        # 枠は引き渡されるのでカウンタは変わらない
        assert gate.in_flight == 3
        assert gate.waiting == 0

    @pytest.mark.asyncio
    async def test_waiters_are_granted_in_arrival_order(self):
        gate = ThrottleGate(1)
        first = await gate.acquire()
        granted = []

        async def waiter(name):
            permit = await gate.acquire()
            granted.append(name)
            gate.release(permit)

        tasks = []
        for name in ["a", "b", "c", "d"]:
            tasks.append(asyncio.ensure_future(waiter(name)))
            await asyncio.sleep(0)

        gate.release(first)
        await asyncio.gather(*tasks)

        assert granted == ["a", "b", "c", "d"]
        assert gate.in_flight == 0

    @pytest.mark.asyncio
    async def test_release_without_waiters_frees_slot(self):
        gate = ThrottleGate(2)
        permit = await gate.acquire()

        gate.release(permit)

        assert gate.in_flight == 0

    @pytest.mark.asyncio
    async def test_double_release_raises(self):
        gate = ThrottleGate(2)
        permit = await gate.acquire()
        gate.release(permit)

        with pytest.raises(RuntimeError):
            gate.release(permit)
        assert gate.in_flight == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self):
        gate = ThrottleGate(1)
        permit = await gate.acquire()

        waiter = asyncio.ensure_future(gate.acquire())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert gate.waiting == 0
        gate.release(permit)
        assert gate.in_flight == 0

    @pytest.mark.asyncio
    async def test_slot_releases_on_error(self):
        gate = ThrottleGate(1)

        with pytest.raises(ValueError):
            async with gate.slot():
                raise ValueError("boom")

        assert gate.in_flight == 0

    def test_invalid_cap(self):
        with pytest.raises(ValueError):
            ThrottleGate(0)
