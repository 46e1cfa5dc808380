"""Tests for the idle shutdown governor."""

from __future__ import annotations

import asyncio

from workspace_host.idle import IdleGovernor


class Counter:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1


async def test_regular_activity_prevents_shutdown():
    expired = Counter()
    governor = IdleGovernor(window=0.3, on_expire=expired)

    for _ in range(8):
        governor.touch()
        await asyncio.sleep(0.1)

    assert expired.calls == 0
    assert governor.armed
    governor.cancel()


async def test_inactivity_fires_exactly_once():
    expired = Counter()
    governor = IdleGovernor(window=0.1, on_expire=expired)

    governor.touch()
    await asyncio.sleep(0.4)

    assert expired.calls == 1
    assert governor.fired
    assert not governor.armed


async def test_no_rearm_after_firing():
    expired = Counter()
    governor = IdleGovernor(window=0.05, on_expire=expired)
    governor.touch()
    await asyncio.sleep(0.2)

    governor.touch()
    await asyncio.sleep(0.2)

    assert expired.calls == 1
    assert not governor.armed


async def test_zero_window_disables_governor():
    expired = Counter()
    governor = IdleGovernor(window=0, on_expire=expired)

    governor.touch()
    await asyncio.sleep(0.05)

    assert not governor.enabled
    assert not governor.armed
    assert expired.calls == 0


async def test_remaining_resets_on_touch():
    governor = IdleGovernor(window=60, on_expire=Counter())
    governor.touch()
    await asyncio.sleep(0.1)
    before = governor.remaining

    governor.touch()

    assert governor.remaining > before
    assert 59 < governor.remaining <= 60
    governor.cancel()


async def test_no_expiry_while_request_in_progress():
    expired = Counter()
    governor = IdleGovernor(window=0.1, on_expire=expired)

    with governor.activity():
        await asyncio.sleep(0.4)
        assert expired.calls == 0
        assert governor.in_flight == 1

    assert governor.in_flight == 0
    assert governor.armed
    await asyncio.sleep(0.3)
    assert expired.calls == 1


async def test_activity_restarts_window_when_request_ends():
    governor = IdleGovernor(window=60, on_expire=Counter())

    with governor.activity():
        await asyncio.sleep(0.1)

    assert governor.remaining > 59.9
    governor.cancel()
