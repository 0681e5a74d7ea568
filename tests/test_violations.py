from __future__ import annotations

import asyncio

import pytest

from warden_bot.enforcement.violations import ViolationTracker
from warden_bot.models import EscalationAction
from tests.factories import open_storage


@pytest.mark.asyncio
async def test_escalates_to_mute_at_threshold_and_restarts() -> None:
    async with open_storage() as storage:
        tracker = ViolationTracker(storage)

        outcomes = [await tracker.record_violation("u1", "g1", threshold=3) for _ in range(4)]

        assert [(o.action, o.new_count) for o in outcomes] == [
            (EscalationAction.WARN, 1),
            (EscalationAction.WARN, 2),
            (EscalationAction.MUTE, 3),
            (EscalationAction.WARN, 1),
        ]


@pytest.mark.asyncio
async def test_counter_is_reset_after_mute() -> None:
    async with open_storage() as storage:
        tracker = ViolationTracker(storage)
        for _ in range(3):
            await tracker.record_violation("u1", "g1", threshold=3)

        assert await tracker.current("u1", "g1") == 0
        record = await storage.get_violation("u1", "g1")
        assert record is not None and record.count == 0


@pytest.mark.asyncio
async def test_counters_are_per_guild() -> None:
    async with open_storage() as storage:
        tracker = ViolationTracker(storage)
        await tracker.record_violation("u1", "g1", threshold=3)
        await tracker.record_violation("u1", "g1", threshold=3)

        other = await tracker.record_violation("u1", "g2", threshold=3)

        assert other.action == EscalationAction.WARN
        assert other.new_count == 1
        assert await tracker.current("u1", "g1") == 2


@pytest.mark.asyncio
async def test_threshold_of_one_mutes_immediately() -> None:
    async with open_storage() as storage:
        tracker = ViolationTracker(storage)

        outcome = await tracker.record_violation("u1", "g1", threshold=1)

        assert outcome.action == EscalationAction.MUTE
        with pytest.raises(ValueError):
            await tracker.record_violation("u1", "g1", threshold=0)


@pytest.mark.asyncio
async def test_explicit_reset() -> None:
    async with open_storage() as storage:
        tracker = ViolationTracker(storage)
        await tracker.record_violation("u1", "g1", threshold=5)
        await tracker.record_violation("u1", "g1", threshold=5)

        await tracker.reset("u1", "g1")

        outcome = await tracker.record_violation("u1", "g1", threshold=5)
        assert outcome.new_count == 1


@pytest.mark.asyncio
async def test_concurrent_violations_mute_exactly_once() -> None:
    async with open_storage() as storage:
        tracker = ViolationTracker(storage)
        await tracker.record_violation("u1", "g1", threshold=2)

        outcomes = await asyncio.gather(
            tracker.record_violation("u1", "g1", threshold=2),
            tracker.record_violation("u1", "g1", threshold=2),
        )

        assert sorted((o.action.value, o.new_count) for o in outcomes) == [
            (EscalationAction.MUTE.value, 2),
            (EscalationAction.WARN.value, 1),
        ]
        assert await tracker.current("u1", "g1") == 1
