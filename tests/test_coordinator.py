from __future__ import annotations

import asyncio

import pytest

from warden_bot.config import load_settings
from warden_bot.models import GuildMember
from warden_bot.services.coordinator import WardenCoordinator
from warden_bot.storage.sqlite import SQLiteStorage
from tests.factories import FakeLedger, FakeSession


class StalledSession(FakeSession):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.release = asyncio.Event()

    async def list_members(self, guild_id: str) -> list[GuildMember]:
        await self.release.wait()
        return await super().list_members(guild_id)


@pytest.mark.asyncio
async def test_shutdown_stops_startup_sweep_before_storage_closes() -> None:
    settings = load_settings(
        telegram_tokens=["123:abc"],
        scanner={"scan_schedule": "", "scan_on_startup": True, "notify_admin_id": "admin"},
    )
    session = StalledSession(guilds={"g1": ["A"]})
    coordinator = WardenCoordinator(
        settings,
        sessions_provider=lambda: [session],
        storage=SQLiteStorage(":memory:"),
        ledger=FakeLedger(),
    )

    await coordinator.start()
    await asyncio.sleep(0.05)
    assert coordinator.scanner.running

    await coordinator.shutdown()

    assert not coordinator.scanner.running
    assert coordinator._startup_scan is not None and coordinator._startup_scan.done()
    session.release.set()
    await asyncio.sleep(0)
    assert session.kicked == []
    assert session.private == []
