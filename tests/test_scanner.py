from __future__ import annotations

import asyncio

import pytest

from warden_bot.config import MessageTemplates
from warden_bot.enforcement.blacklist import BlacklistStore
from warden_bot.enforcement.scanner import ReconciliationScanner
from warden_bot.models import GuildMember
from tests.factories import FakeSession, HangingSession, open_storage


async def banned_store(storage, *user_ids: str) -> BlacklistStore:
    store = BlacklistStore(storage, storage)
    for user_id in user_ids:
        await storage.link_account(user_id)
        await store.ban(user_id, user_id, "op")
    return store


def make_scanner(
    store: BlacklistStore,
    sessions,
    *,
    admin: str = "admin",
    call_timeout: float = 1.0,
) -> ReconciliationScanner:
    return ReconciliationScanner(
        store,
        lambda: sessions,
        MessageTemplates(),
        notify_admin_id=admin,
        call_timeout=call_timeout,
    )


@pytest.mark.asyncio
async def test_scan_kicks_only_blacklisted_members() -> None:
    async with open_storage() as storage:
        store = await banned_store(storage, "A", "B")
        session = FakeSession(guilds={"g1": ["A", "C"]})

        report = await make_scanner(store, [session]).run_scan()

        assert session.kicked == [("g1", "A")]
        assert report.kicked == 1
        assert report.failures == 0


@pytest.mark.asyncio
async def test_scan_continues_after_kick_failures() -> None:
    async with open_storage() as storage:
        store = await banned_store(storage, "A", "B")
        session = FakeSession(guilds={"g1": ["A", "B"], "g2": ["B"]}, fail_kicks=frozenset({"A"}))

        report = await make_scanner(store, [session]).run_scan()

        assert session.kicked == [("g1", "B"), ("g2", "B")]
        assert report.kicked == 2
        assert report.failures == 1


@pytest.mark.asyncio
async def test_scan_covers_every_session_and_skips_broken_ones() -> None:
    async with open_storage() as storage:
        store = await banned_store(storage, "A")
        broken = FakeSession("bot-0", fail_all=True)
        first = FakeSession("bot-1", guilds={"g1": ["A"]})
        second = FakeSession("bot-2", guilds={"g1": ["A"], "g2": ["A"]})

        report = await make_scanner(store, [broken, first, second]).run_scan()

        assert first.kicked == [("g1", "A")]
        # g1 was already handled through bot-1 in this sweep.
        assert second.kicked == [("g2", "A")]
        assert report.kicked == 2
        assert report.failures == 1


@pytest.mark.asyncio
async def test_summary_sent_once_to_admin() -> None:
    async with open_storage() as storage:
        store = await banned_store(storage, "A")
        first = FakeSession("bot-1", guilds={"g1": ["A"]})
        second = FakeSession("bot-2", guilds={"g2": ["A"]})

        await make_scanner(store, [first, second]).run_scan()

        assert len(first.private) == 1
        assert second.private == []
        admin, text = first.private[0]
        assert admin == "admin"
        assert "2 kicked" in text and "0 failures" in text


@pytest.mark.asyncio
async def test_no_summary_without_admin() -> None:
    async with open_storage() as storage:
        store = await banned_store(storage, "A")
        session = FakeSession(guilds={"g1": ["A"]})

        await make_scanner(store, [session], admin="").run_scan()

        assert session.private == []


class SlowSession(FakeSession):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.release = asyncio.Event()
        self.list_calls = 0

    async def list_members(self, guild_id: str) -> list[GuildMember]:
        self.list_calls += 1
        await self.release.wait()
        return await super().list_members(guild_id)


@pytest.mark.asyncio
async def test_overlapping_triggers_coalesce_into_one_sweep() -> None:
    async with open_storage() as storage:
        store = await banned_store(storage, "A")
        session = SlowSession(guilds={"g1": ["A"]})
        scanner = make_scanner(store, [session])

        first = asyncio.create_task(scanner.run_scan())
        await asyncio.sleep(0.05)
        assert scanner.running
        second = asyncio.create_task(scanner.run_scan())
        await asyncio.sleep(0)
        session.release.set()
        reports = await asyncio.gather(first, second)

        assert reports[0] is reports[1]
        assert session.list_calls == 1
        assert session.kicked == [("g1", "A")]
        assert len(session.private) == 1
        assert not scanner.running


@pytest.mark.asyncio
async def test_bans_added_mid_scan_wait_for_next_sweep() -> None:
    async with open_storage() as storage:
        store = await banned_store(storage, "A")
        await storage.link_account("B")
        session = SlowSession(guilds={"g1": ["A", "B"]})
        scanner = make_scanner(store, [session])

        running = asyncio.create_task(scanner.run_scan())
        await asyncio.sleep(0.05)
        await store.ban("B", "B", "op")
        session.release.set()
        report = await running

        assert report.kicked == 1
        assert session.kicked == [("g1", "A")]

        next_report = await scanner.run_scan()
        assert next_report.kicked == 2


@pytest.mark.asyncio
async def test_hanging_kick_times_out_and_sweep_continues() -> None:
    async with open_storage() as storage:
        store = await banned_store(storage, "A")
        stuck = HangingSession("bot-1", guilds={"g1": ["A"]})
        healthy = FakeSession("bot-2", guilds={"g2": ["A"]})

        report = await make_scanner(store, [stuck, healthy], call_timeout=0.05).run_scan()

        assert (report.kicked, report.failures) == (1, 1)
        assert stuck.kicked == []
        assert healthy.kicked == [("g2", "A")]
        assert len(stuck.private) == 1


@pytest.mark.asyncio
async def test_aclose_cancels_sweep_in_flight() -> None:
    async with open_storage() as storage:
        store = await banned_store(storage, "A")
        session = SlowSession(guilds={"g1": ["A"]})
        scanner = make_scanner(store, [session])

        trigger = asyncio.create_task(scanner.run_scan())
        await asyncio.sleep(0.05)
        assert scanner.running

        await scanner.aclose()

        assert not scanner.running
        with pytest.raises(asyncio.CancelledError):
            await trigger
        session.release.set()
        await asyncio.sleep(0)
        assert session.kicked == []
        assert session.private == []
