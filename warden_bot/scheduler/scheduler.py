from __future__ import annotations

from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..enforcement.scanner import ReconciliationScanner
from ..models import ScanReport

logger = structlog.get_logger(__name__)

SCAN_JOB_ID = "blacklist_reconciliation"


class ScanScheduler:
    def __init__(
        self,
        scanner: ReconciliationScanner,
        *,
        cron_expression: str = "",
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self._scanner = scanner
        self._cron = cron_expression.strip()
        self._scheduler = scheduler or AsyncIOScheduler()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        if not self._cron:
            logger.info("scan_schedule_disabled")
            return
        self._scheduler.add_job(
            self._run_job,
            trigger=CronTrigger.from_crontab(self._cron),
            id=SCAN_JOB_ID,
            name="Reconcile guild membership against the blacklist",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        self._running = True
        logger.info("scan_scheduler_started", cron=self._cron)

    async def stop(self) -> None:
        if not self._running:
            return
        self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("scan_scheduler_stopped")

    async def trigger_now(self) -> ScanReport:
        logger.info("scan_triggered_on_demand")
        return await self._scanner.run_scan()

    async def _run_job(self) -> None:
        try:
            report = await self._scanner.run_scan()
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("scheduled_scan_failed", error=str(exc))
            return
        logger.info("scheduled_scan_complete", kicked=report.kicked, failures=report.failures)
