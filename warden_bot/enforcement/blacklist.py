from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from ..errors import UnresolvedAccountError
from ..models import Authority, BlacklistEntry
from ..storage.base import AccountDirectory, BlacklistRepository

logger = structlog.get_logger(__name__)


class BlacklistStore:
    """Global ban registry.

    An entry exists for an account exactly when that account's authority is 0.
    Both halves of that pair are written by a single storage transaction, so a
    failed ban or unban leaves neither half changed.
    """

    def __init__(
        self,
        accounts: AccountDirectory,
        repository: BlacklistRepository,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._accounts = accounts
        self._repository = repository
        self._clock = clock

    async def ban(self, external_user_id: str, display_name: str, operator_id: str) -> None:
        account_id = await self._accounts.resolve_account(external_user_id)
        if account_id is None:
            logger.warning("blacklist_ban_unresolved", external_user_id=external_user_id)
            raise UnresolvedAccountError(external_user_id)
        await self._repository.ban_account(
            account_id,
            external_user_id,
            display_name or external_user_id,
            operator_id,
            self._clock(),
        )
        logger.info(
            "blacklist_ban_committed",
            external_user_id=external_user_id,
            account_id=account_id,
            operator_id=operator_id,
        )

    async def unban(self, external_user_id: str) -> None:
        account_id = await self._accounts.resolve_account(external_user_id)
        if account_id is None:
            logger.warning("blacklist_unban_unresolved", external_user_id=external_user_id)
            raise UnresolvedAccountError(external_user_id)
        await self._repository.unban_account(account_id)
        logger.info("blacklist_unban_committed", external_user_id=external_user_id, account_id=account_id)

    async def is_banned(self, external_user_id: str) -> bool:
        account_id = await self._accounts.resolve_account(external_user_id)
        if account_id is not None:
            entry = await self._repository.get_entry(account_id=account_id)
        else:
            entry = await self._repository.get_entry(external_user_id=external_user_id)
        return entry is not None

    async def get_authority(self, external_user_id: str) -> Optional[int]:
        return await self._accounts.get_authority(external_user_id)

    async def is_authority_banned(self, external_user_id: str) -> bool:
        return await self.get_authority(external_user_id) == Authority.BANNED

    async def list(self, page: int = 1, page_size: int = 20) -> tuple[list[BlacklistEntry], int]:
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")
        return await self._repository.list_entries((page - 1) * page_size, page_size)

    async def banned_external_ids(self) -> set[str]:
        return await self._repository.banned_external_ids()
