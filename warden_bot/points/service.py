from __future__ import annotations

import random
from typing import Optional

import structlog

from ..adapters.ledger import LedgerClient, LedgerOperation, LedgerResult
from ..config import MessageTemplates
from ..errors import NetworkError
from ..templates import TemplateSource, render

logger = structlog.get_logger(__name__)


class PointsService:
    """User-facing points commands backed by the remote ledger."""

    def __init__(
        self,
        ledger: LedgerClient,
        messages: MessageTemplates,
        *,
        rank_limit: int = 10,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._ledger = ledger
        self._messages = messages
        self._rank_limit = rank_limit
        self._rng = rng or random.Random()

    async def give(self, operator_id: str, target_id: str, target_name: str, amount: int) -> str:
        return await self._modify(
            LedgerOperation.ADD,
            self._messages.give_success,
            user_id=target_id,
            name=target_name,
            amount=amount,
            target_name=target_name,
            operator_id=operator_id,
        )

    async def deduct(self, operator_id: str, target_id: str, target_name: str, amount: int) -> str:
        return await self._modify(
            LedgerOperation.DEDUCT,
            self._messages.deduct_success,
            user_id=target_id,
            name=target_name,
            amount=amount,
            target_name=target_name,
            operator_id=operator_id,
        )

    async def transfer(self, sender_id: str, sender_name: str, target_id: str, target_name: str, amount: int) -> str:
        return await self._modify(
            LedgerOperation.TRANSFER,
            self._messages.transfer_success,
            user_id=sender_id,
            name=sender_name,
            amount=amount,
            target=target_id,
            target_name=target_name,
            operator_id=sender_id,
        )

    async def query(self, user_id: str, name: str) -> str:
        try:
            result = await self._ledger.query(user_id)
        except NetworkError as exc:
            logger.warning("points_query_failed", user_id=user_id, error=str(exc))
            return self._fail()
        if not result.ok:
            logger.warning("points_query_rejected", user_id=user_id, code=result.code)
            return self._fail()
        return render(
            self._messages.query_success,
            self._rng,
            user=name,
            score=_or_dash(result.score),
            rank=_or_dash(result.rank),
        )

    async def ranking(self) -> str:
        try:
            result = await self._ledger.ranking()
        except NetworkError as exc:
            logger.warning("points_ranking_failed", error=str(exc))
            return self._fail()
        if not result.ok:
            logger.warning("points_ranking_rejected", code=result.code)
            return self._fail()
        lines = [
            f"{position}. {entry.name} - {entry.score}"
            for position, entry in enumerate(result.ranking[: self._rank_limit], start=1)
        ]
        return render(self._messages.rank_success, self._rng, rank="\n".join(lines))

    async def _modify(
        self,
        operation: LedgerOperation,
        success: TemplateSource,
        *,
        user_id: str,
        name: str,
        amount: int,
        operator_id: str,
        target: Optional[str] = None,
        target_name: Optional[str] = None,
    ) -> str:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            return render(self._messages.invalid_amount, self._rng)
        try:
            result: LedgerResult = await self._ledger.modify(
                operation,
                user_id,
                name,
                amount,
                target=target,
                target_name=target_name,
            )
        except NetworkError as exc:
            logger.warning("points_modify_failed", operation=operation.value, operator_id=operator_id, error=str(exc))
            return self._fail()
        if result.insufficient:
            return render(self._messages.insufficient_balance, self._rng, amount=amount)
        if not result.ok:
            logger.warning(
                "points_modify_rejected",
                operation=operation.value,
                operator_id=operator_id,
                code=result.code,
                message=result.message,
            )
            return self._fail()
        logger.info(
            "points_modified",
            operation=operation.value,
            operator_id=operator_id,
            user_id=user_id,
            amount=amount,
        )
        return render(
            success,
            self._rng,
            target=target_name or user_id,
            amount=amount,
            score=_or_dash(result.score),
        )

    def _fail(self) -> str:
        return render(self._messages.operation_fail, self._rng)


def _or_dash(value: Optional[int]) -> str:
    return "-" if value is None else str(value)
