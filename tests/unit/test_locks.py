"""Unit tests for the per-instance lock registry."""

import asyncio

import pytest

from gitops_operator.utils.locks import InstanceLocks


@pytest.mark.asyncio
async def test_same_key_returns_same_lock():
    locks = InstanceLocks()

    first = await locks.get(("ns1", "demo"))
    second = await locks.get(("ns1", "demo"))

    assert first is second
    assert first is not await locks.get(("ns1", "other"))
    assert len(locks) == 2


@pytest.mark.asyncio
async def test_hold_serializes_writers():
    locks = InstanceLocks()
    order = []

    async def writer(label: str, delay: float):
        async with locks.hold(("ns1", "demo")):
            order.append(f"{label}-start")
            await asyncio.sleep(delay)
            order.append(f"{label}-end")

    await asyncio.gather(writer("a", 0.05), writer("b", 0))

    assert order == ["a-start", "a-end", "b-start", "b-end"]


@pytest.mark.asyncio
async def test_locked_reflects_holder():
    locks = InstanceLocks()
    key = ("ns1", "demo")

    assert not locks.locked(key)
    async with locks.hold(key):
        assert locks.locked(key)
    assert not locks.locked(key)


@pytest.mark.asyncio
async def test_discard_keeps_held_lock():
    locks = InstanceLocks()
    key = ("ns1", "demo")

    async with locks.hold(key):
        locks.discard(key)
        assert len(locks) == 1

    locks.discard(key)
    assert len(locks) == 0


def test_discard_unknown_key_is_noop():
    locks = InstanceLocks()

    locks.discard(("ns1", "missing"))

    assert len(locks) == 0
