from __future__ import annotations

import asyncio
import logging
import random
from typing import Optional

import structlog

from ..adapters.ledger import LedgerClient
from ..config import WardenSettings
from ..enforcement.blacklist import BlacklistStore
from ..enforcement.controller import EnforcementController
from ..enforcement.keywords import KeywordFilter
from ..enforcement.scanner import ReconciliationScanner, SessionsProvider
from ..enforcement.violations import ViolationTracker
from ..logging.events import setup_logging
from ..points.service import PointsService
from ..scheduler.scheduler import ScanScheduler
from ..storage.base import StorageGateway
from ..storage.sqlite import SQLiteStorage

logger = structlog.get_logger(__name__)


class WardenCoordinator:
    """Owns the storage, ledger and enforcement components and their lifecycle."""

    def __init__(
        self,
        settings: WardenSettings,
        *,
        sessions_provider: SessionsProvider,
        storage: Optional[StorageGateway] = None,
        ledger: Optional[LedgerClient] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)
        setup_logging(level=log_level, use_json=settings.logging.use_json)
        self._settings = settings
        rng = rng or random.Random()
        self.storage = storage or SQLiteStorage(settings.storage.sqlite_path)
        self.ledger = ledger or LedgerClient(
            settings.ledger.base_url,
            modify_path=settings.ledger.modify_path,
            query_path=settings.ledger.query_path,
            rank_path=settings.ledger.rank_path,
            timeout=settings.ledger.timeout_seconds,
            connect_attempts=settings.ledger.connect_attempts,
        )
        self.blacklist = BlacklistStore(self.storage, self.storage)
        self.tracker = ViolationTracker(self.storage)
        self.keyword_filter = KeywordFilter(
            settings.enforcement.keywords,
            markup_patterns=settings.enforcement.markup_patterns,
        )
        self.controller = EnforcementController(
            self.blacklist,
            self.tracker,
            self.keyword_filter,
            self.ledger,
            settings.enforcement,
            settings.messages,
            rng=rng,
        )
        self.points = PointsService(
            self.ledger,
            settings.messages,
            rank_limit=settings.ledger.rank_limit,
            rng=rng,
        )
        self.scanner = ReconciliationScanner(
            self.blacklist,
            sessions_provider,
            settings.messages,
            notify_admin_id=settings.scanner.notify_admin_id,
            call_timeout=settings.enforcement.call_timeout_seconds,
            rng=rng,
        )
        self.scheduler = ScanScheduler(self.scanner, cron_expression=settings.scanner.scan_schedule)
        self._startup_scan: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()

    @property
    def settings(self) -> WardenSettings:
        return self._settings

    async def start(self) -> None:
        await self.storage.connect()
        await self.scheduler.start()
        if self._settings.scanner.scan_on_startup:
            self._startup_scan = asyncio.create_task(self.scanner.run_scan())
        self._ready.set()
        logger.info(
            "warden_coordinator_started",
            keywords=len(self.keyword_filter.keywords),
            schedule=self._settings.scanner.scan_schedule or None,
        )

    async def wait_ready(self) -> None:
        await self._ready.wait()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        # The sweep itself must be gone before the sessions and storage close under it.
        await self.scanner.aclose()
        if self._startup_scan is not None:
            await asyncio.wait([self._startup_scan])
            if not self._startup_scan.cancelled() and self._startup_scan.exception() is not None:
                logger.error("startup_scan_failed", error=str(self._startup_scan.exception()))
        await self.ledger.close()
        await self.storage.disconnect()
        logger.info("warden_coordinator_stopped")
