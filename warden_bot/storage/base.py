from __future__ import annotations

import abc
from datetime import datetime
from typing import Optional

from ..models import BlacklistEntry, KeywordViolation


class AccountDirectory(abc.ABC):
    """Identity bindings from platform user ids to internal accounts."""

    @abc.abstractmethod
    async def resolve_account(self, external_user_id: str) -> Optional[int]:
        ...

    @abc.abstractmethod
    async def get_authority(self, external_user_id: str) -> Optional[int]:
        ...

    @abc.abstractmethod
    async def link_account(
        self,
        external_user_id: str,
        *,
        account_id: Optional[int] = None,
        authority: int = 1,
    ) -> int:
        ...


class BlacklistRepository(abc.ABC):
    @abc.abstractmethod
    async def ban_account(
        self,
        account_id: int,
        external_user_id: str,
        display_name: str,
        operator_id: str,
        created_at: datetime,
    ) -> None:
        """Set authority to 0 and upsert the entry in one transaction."""

    @abc.abstractmethod
    async def unban_account(self, account_id: int) -> None:
        """Restore authority and delete the entry in one transaction."""

    @abc.abstractmethod
    async def get_entry(
        self,
        *,
        account_id: Optional[int] = None,
        external_user_id: Optional[str] = None,
    ) -> Optional[BlacklistEntry]:
        ...

    @abc.abstractmethod
    async def list_entries(self, offset: int, limit: int) -> tuple[list[BlacklistEntry], int]:
        ...

    @abc.abstractmethod
    async def banned_external_ids(self) -> set[str]:
        ...


class ViolationRepository(abc.ABC):
    @abc.abstractmethod
    async def record_violation(
        self,
        external_user_id: str,
        guild_id: str,
        at: datetime,
        threshold: int,
    ) -> tuple[int, bool]:
        """Count one violation; at the threshold reset to 0 in the same transaction.

        Returns the count the violation reached and whether it hit the threshold.
        """

    @abc.abstractmethod
    async def reset_violations(self, external_user_id: str, guild_id: str) -> None:
        ...

    @abc.abstractmethod
    async def get_violation(self, external_user_id: str, guild_id: str) -> Optional[KeywordViolation]:
        ...


class StorageGateway(AccountDirectory, BlacklistRepository, ViolationRepository, abc.ABC):
    """Combined repository interface for convenience."""

    @abc.abstractmethod
    async def connect(self) -> None:
        ...

    @abc.abstractmethod
    async def disconnect(self) -> None:
        ...
