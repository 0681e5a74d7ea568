from __future__ import annotations

import abc
from typing import Optional

from ..models import GuildMember, MembershipRequestEvent, PlatformUser


class PlatformSession(abc.ABC):
    """One connected bot session. Every method is a single remote call that can fail."""

    session_id: str

    @abc.abstractmethod
    async def kick(self, guild_id: str, user_id: str) -> None:
        ...

    @abc.abstractmethod
    async def mute(self, guild_id: str, user_id: str, duration_seconds: int) -> None:
        ...

    @abc.abstractmethod
    async def delete_message(self, channel_id: str, message_id: str) -> None:
        ...

    @abc.abstractmethod
    async def get_user(self, user_id: str) -> Optional[PlatformUser]:
        ...

    @abc.abstractmethod
    async def reject_request(self, request: MembershipRequestEvent) -> None:
        ...

    @abc.abstractmethod
    async def send_message(self, channel_id: str, text: str, *, reply_to: Optional[str] = None) -> None:
        ...

    @abc.abstractmethod
    async def send_private_message(self, user_id: str, text: str) -> None:
        ...

    @abc.abstractmethod
    async def list_administered_guilds(self) -> list[str]:
        ...

    @abc.abstractmethod
    async def list_members(self, guild_id: str) -> list[GuildMember]:
        ...
