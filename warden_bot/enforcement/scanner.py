from __future__ import annotations

import asyncio
import random
from typing import Callable, Optional, Sequence

import structlog

from ..config import MessageTemplates
from ..models import ScanReport
from ..platform.base import PlatformSession
from ..templates import render
from ..utils.concurrency import call_platform
from .blacklist import BlacklistStore

logger = structlog.get_logger(__name__)

SessionsProvider = Callable[[], Sequence[PlatformSession]]


class ReconciliationScanner:
    """Sweep every administered guild and kick members found in the blacklist.

    The blacklist is read once per sweep; bans added while a sweep runs are
    enforced by the next one. Triggers that arrive while a sweep is in flight
    join it and receive its report.
    """

    def __init__(
        self,
        blacklist: BlacklistStore,
        sessions_provider: SessionsProvider,
        messages: MessageTemplates,
        *,
        notify_admin_id: str = "",
        call_timeout: float = 10.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._blacklist = blacklist
        self._sessions_provider = sessions_provider
        self._messages = messages
        self._notify_admin_id = notify_admin_id
        self._timeout = call_timeout
        self._rng = rng or random.Random()
        self._inflight: Optional[asyncio.Task[ScanReport]] = None

    @property
    def running(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def run_scan(self) -> ScanReport:
        if self.running:
            logger.info("scan_coalesced")
        else:
            self._inflight = asyncio.create_task(self._sweep())
        # Shielded so a cancelled trigger does not abort the sweep other callers joined.
        return await asyncio.shield(self._inflight)

    async def aclose(self) -> None:
        """Cancel the sweep in flight and wait until it has unwound."""
        task, self._inflight = self._inflight, None
        if task is None:
            return
        if not task.done():
            task.cancel()
            await asyncio.wait([task])
        if task.cancelled():
            logger.info("scan_cancelled")
        elif task.exception() is not None:
            logger.error("scan_failed", error=str(task.exception()))

    async def _sweep(self) -> ScanReport:
        report = ScanReport()
        banned = await self._blacklist.banned_external_ids()
        sessions = list(self._sessions_provider())
        logger.info("scan_started", banned=len(banned), sessions=len(sessions))
        handled: set[tuple[str, str]] = set()

        for session in sessions:
            ok, guilds = await call_platform(
                "list_administered_guilds",
                session.list_administered_guilds,
                timeout=self._timeout,
                session_id=session.session_id,
            )
            if not ok:
                report.failures += 1
                continue
            for guild_id in guilds or []:
                await self._sweep_guild(session, guild_id, banned, handled, report)

        logger.info("scan_finished", kicked=report.kicked, failures=report.failures)
        await self._notify(sessions, report)
        return report

    async def _sweep_guild(
        self,
        session: PlatformSession,
        guild_id: str,
        banned: set[str],
        handled: set[tuple[str, str]],
        report: ScanReport,
    ) -> None:
        ok, members = await call_platform(
            "list_members",
            lambda: session.list_members(guild_id),
            timeout=self._timeout,
            session_id=session.session_id,
            guild_id=guild_id,
        )
        if not ok:
            report.failures += 1
            return
        for member in members or []:
            if member.user_id not in banned or (guild_id, member.user_id) in handled:
                continue
            kicked, _ = await call_platform(
                "kick",
                lambda: session.kick(guild_id, member.user_id),
                timeout=self._timeout,
                session_id=session.session_id,
                guild_id=guild_id,
                user_id=member.user_id,
            )
            if kicked:
                handled.add((guild_id, member.user_id))
                report.kicked += 1
                logger.info("scan_member_kicked", guild_id=guild_id, user_id=member.user_id)
            else:
                report.failures += 1

    async def _notify(self, sessions: Sequence[PlatformSession], report: ScanReport) -> None:
        if not self._notify_admin_id:
            return
        text = render(
            self._messages.scan_summary,
            self._rng,
            kicked=report.kicked,
            failures=report.failures,
        )
        # One summary per sweep, through the first session able to deliver it.
        for session in sessions:
            sent, _ = await call_platform(
                "send_private_message",
                lambda: session.send_private_message(self._notify_admin_id, text),
                timeout=self._timeout,
                session_id=session.session_id,
            )
            if sent:
                return
        logger.warning("scan_summary_undelivered", admin_id=self._notify_admin_id)
