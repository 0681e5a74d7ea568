from __future__ import annotations

import pytest
from aiogram.enums import ChatMemberStatus
from aiogram.types import User

from warden_bot.models import MembershipRequestEvent, RemovalKind, RequestKind
from warden_bot.services.telegram_bot import TelegramSession, removal_kind


class RecordingBot:
    id = 777

    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def ban_chat_member(self, chat_id, user_id, **kwargs):
        self.calls.append(("ban", chat_id, user_id))

    async def unban_chat_member(self, chat_id, user_id, **kwargs):
        self.calls.append(("unban", chat_id, user_id, kwargs.get("only_if_banned")))

    async def decline_chat_join_request(self, chat_id, user_id):
        self.calls.append(("decline", chat_id, user_id))


@pytest.mark.asyncio
async def test_administered_chats_follow_bot_status() -> None:
    session = TelegramSession(RecordingBot())

    session.observe_bot_status(-100, "Group", ChatMemberStatus.ADMINISTRATOR)
    session.observe_bot_status(-200, "Other", ChatMemberStatus.MEMBER)
    assert await session.list_administered_guilds() == ["-100"]

    session.observe_bot_status(-100, "Group", ChatMemberStatus.LEFT)
    assert await session.list_administered_guilds() == []


@pytest.mark.asyncio
async def test_kick_removes_member_from_roster_and_lifts_chat_ban() -> None:
    bot = RecordingBot()
    session = TelegramSession(bot)
    session.observe_member(-100, 1, "Alice")
    session.observe_member(-100, 2, "Bob")

    await session.kick("-100", "1")

    assert bot.calls == [("ban", -100, 1), ("unban", -100, 1, True)]
    members = await session.list_members("-100")
    assert [(m.user_id, m.display_name) for m in members] == [("2", "Bob")]


@pytest.mark.asyncio
async def test_reject_request_declines_join() -> None:
    bot = RecordingBot()
    session = TelegramSession(bot)

    await session.reject_request(
        MembershipRequestEvent(kind=RequestKind.INVITE, session_id="777", guild_id="-100", user_id="5")
    )

    assert session.session_id == "777"
    assert bot.calls == [("decline", -100, 5)]


def test_only_human_administrator_kicks_count_as_kicks() -> None:
    admin = User(id=1, is_bot=False, first_name="Admin")
    other_warden = User(id=888, is_bot=True, first_name="Warden")
    member_id = 5

    assert removal_kind(ChatMemberStatus.KICKED, admin, member_id) == RemovalKind.KICKED
    assert removal_kind(ChatMemberStatus.KICKED, other_warden, member_id) == RemovalKind.LEFT
    assert removal_kind(ChatMemberStatus.LEFT, User(id=member_id, is_bot=False, first_name="M"), member_id) == (
        RemovalKind.LEFT
    )
    assert removal_kind(ChatMemberStatus.RESTRICTED, admin, member_id) is None
