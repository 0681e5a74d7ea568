from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

import structlog

from ..models import EscalationAction, EscalationOutcome
from ..storage.base import ViolationRepository

logger = structlog.get_logger(__name__)


class ViolationTracker:
    """Per (user, guild) escalation: warn until the threshold, then mute and start over."""

    def __init__(
        self,
        repository: ViolationRepository,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._repository = repository
        self._clock = clock

    async def record_violation(self, user_id: str, guild_id: str, threshold: int) -> EscalationOutcome:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        # Muting closes the cycle; the repository resets the counter atomically.
        count, reached = await self._repository.record_violation(user_id, guild_id, self._clock(), threshold)
        if reached:
            logger.info("violation_escalated_to_mute", user_id=user_id, guild_id=guild_id, count=count)
            return EscalationOutcome(new_count=count, action=EscalationAction.MUTE)
        logger.info(
            "violation_warned",
            user_id=user_id,
            guild_id=guild_id,
            count=count,
            threshold=threshold,
        )
        return EscalationOutcome(new_count=count, action=EscalationAction.WARN)

    async def reset(self, user_id: str, guild_id: str) -> None:
        await self._repository.reset_violations(user_id, guild_id)
        logger.info("violations_reset", user_id=user_id, guild_id=guild_id)

    async def current(self, user_id: str, guild_id: str) -> int:
        record = await self._repository.get_violation(user_id, guild_id)
        return record.count if record else 0
