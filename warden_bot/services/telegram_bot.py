from __future__ import annotations

from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from aiogram import Bot, Dispatcher, F
from aiogram.enums import ChatMemberStatus, ChatType
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError
from aiogram.filters import Command, CommandObject
from aiogram.types import ChatJoinRequest, ChatMemberUpdated, ChatPermissions, Message, User

from ..config import WardenSettings
from ..logging.events import bind_event_context
from ..models import (
    GuildMember,
    MemberRemovedEvent,
    MembershipRequestEvent,
    MessageEvent,
    PlatformUser,
    RemovalKind,
    RequestKind,
)
from ..platform.base import PlatformSession
from ..templates import render
from ..utils.concurrency import call_platform
from .coordinator import WardenCoordinator

logger = structlog.get_logger(__name__)

GROUP_CHATS = {ChatType.GROUP, ChatType.SUPERGROUP}
PRESENT_STATUSES = {
    ChatMemberStatus.MEMBER,
    ChatMemberStatus.ADMINISTRATOR,
    ChatMemberStatus.CREATOR,
    ChatMemberStatus.RESTRICTED,
}
ADMIN_STATUSES = {ChatMemberStatus.ADMINISTRATOR, ChatMemberStatus.CREATOR}


class TelegramSession(PlatformSession):
    """
    One Telegram bot as a platform session.

    The Bot API cannot enumerate chat members, so rosters are assembled from
    the members the bot observes (messages, join and leave updates), and the
    administered chats from the bot's own membership updates.
    """

    def __init__(self, bot: Bot) -> None:
        self.bot = bot
        self.session_id = str(bot.id)
        self._admin_chats: dict[int, str] = {}
        self._rosters: dict[int, dict[int, str]] = defaultdict(dict)

    def observe_bot_status(self, chat_id: int, title: str, status: ChatMemberStatus) -> None:
        if status in ADMIN_STATUSES:
            self._admin_chats[chat_id] = title
        else:
            self._admin_chats.pop(chat_id, None)
            if status in {ChatMemberStatus.LEFT, ChatMemberStatus.KICKED}:
                self._rosters.pop(chat_id, None)

    def observe_member(self, chat_id: int, user_id: int, name: str) -> None:
        self._rosters[chat_id][user_id] = name

    def forget_member(self, chat_id: int, user_id: int) -> None:
        self._rosters.get(chat_id, {}).pop(user_id, None)

    async def kick(self, guild_id: str, user_id: str) -> None:
        chat_id, member_id = int(guild_id), int(user_id)
        await self.bot.ban_chat_member(chat_id, member_id)
        # Lift the chat-level ban again: the global registry decides who may return.
        await self.bot.unban_chat_member(chat_id, member_id, only_if_banned=True)
        self.forget_member(chat_id, member_id)

    async def mute(self, guild_id: str, user_id: str, duration_seconds: int) -> None:
        await self.bot.restrict_chat_member(
            int(guild_id),
            int(user_id),
            permissions=ChatPermissions(can_send_messages=False),
            until_date=datetime.now(timezone.utc) + timedelta(seconds=duration_seconds),
        )

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        await self.bot.delete_message(int(channel_id), int(message_id))

    async def get_user(self, user_id: str) -> Optional[PlatformUser]:
        try:
            chat = await self.bot.get_chat(int(user_id))
        except TelegramBadRequest:
            return None
        name = getattr(chat, "full_name", None) or chat.username or user_id
        return PlatformUser(user_id=user_id, display_name=name)

    async def reject_request(self, request: MembershipRequestEvent) -> None:
        await self.bot.decline_chat_join_request(int(request.guild_id), int(request.user_id))

    async def send_message(self, channel_id: str, text: str, *, reply_to: Optional[str] = None) -> None:
        await self.bot.send_message(
            int(channel_id),
            text,
            reply_to_message_id=int(reply_to) if reply_to else None,
        )

    async def send_private_message(self, user_id: str, text: str) -> None:
        await self.bot.send_message(int(user_id), text)

    async def list_administered_guilds(self) -> list[str]:
        return [str(chat_id) for chat_id in self._admin_chats]

    async def list_members(self, guild_id: str) -> list[GuildMember]:
        roster = self._rosters.get(int(guild_id), {})
        return [GuildMember(user_id=str(user_id), display_name=name) for user_id, name in roster.items()]


class TelegramWardenApp:
    """
    Aiogram integration: every configured token is one session polled by a
    single dispatcher.

    - Group messages go through the enforcement controller; replies are
      finalized (pending rewards settled) right before sending.
    - Join requests from blacklisted users are declined, others are left alone.
    - A member kicked by a human admin is added to the blacklist.
    - `/ban`, `/unban`, `/blacklist`, `/resetwarn`, `/scan` for moderators,
      `/give`, `/deduct`, `/transfer`, `/points`, `/rank` for points.
    """

    def __init__(self, settings: WardenSettings) -> None:
        self._settings = settings
        self.bots = [Bot(token=token) for token in settings.telegram_tokens]
        self.sessions: dict[int, TelegramSession] = {bot.id: TelegramSession(bot) for bot in self.bots}
        self.dispatcher = Dispatcher()
        self.coordinator = WardenCoordinator(settings, sessions_provider=lambda: list(self.sessions.values()))
        self._register_handlers()

    def _register_handlers(self) -> None:
        self.dispatcher.message(Command("ban"))(self._handle_ban)
        self.dispatcher.message(Command("unban"))(self._handle_unban)
        self.dispatcher.message(Command("blacklist"))(self._handle_blacklist)
        self.dispatcher.message(Command("resetwarn"))(self._handle_reset_warn)
        self.dispatcher.message(Command("scan"))(self._handle_scan)
        self.dispatcher.message(Command("give"))(self._handle_give)
        self.dispatcher.message(Command("deduct"))(self._handle_deduct)
        self.dispatcher.message(Command("transfer"))(self._handle_transfer)
        self.dispatcher.message(Command("points"))(self._handle_points)
        self.dispatcher.message(Command("rank"))(self._handle_rank)
        self.dispatcher.message(F.chat.type.in_(GROUP_CHATS) & (F.text | F.caption))(self._handle_message)
        self.dispatcher.chat_join_request()(self._handle_join_request)
        self.dispatcher.chat_member()(self._handle_chat_member)
        self.dispatcher.my_chat_member()(self._handle_my_chat_member)

    @property
    def controller(self):
        return self.coordinator.controller

    async def run(self) -> None:
        await self.coordinator.start()
        try:
            await self.dispatcher.start_polling(
                *self.bots,
                allowed_updates=self.dispatcher.resolve_used_update_types(),
            )
        finally:
            await self.coordinator.shutdown()
            for bot in self.bots:
                await bot.session.close()

    def _session(self, bot: Bot) -> TelegramSession:
        return self.sessions[bot.id]

    async def _handle_message(self, message: Message, bot: Bot) -> None:
        if message.from_user is None or message.from_user.is_bot:
            return
        if message.text and message.text.startswith("/"):
            return
        await self.coordinator.wait_ready()
        session = self._session(bot)
        user = message.from_user
        session.observe_member(message.chat.id, user.id, user.full_name)
        event = MessageEvent(
            session_id=session.session_id,
            guild_id=str(message.chat.id),
            channel_id=str(message.chat.id),
            message_id=str(message.message_id),
            user_id=str(user.id),
            display_name=user.full_name,
            text=message.text or message.caption or "",
            timestamp=message.date.replace(tzinfo=timezone.utc),
        )
        bind_event_context(session_id=event.session_id, guild_id=event.guild_id, user_id=event.user_id)
        try:
            if self._settings.accounts.auto_link:
                await self.coordinator.storage.link_account(event.user_id)
            decision = await self.controller.handle_message(event, session)
            for reply in decision.replies:
                text = await self.controller.finalize_outbound(reply)
                if not text:
                    continue
                await call_platform(
                    "send_message",
                    lambda: session.send_message(reply.channel_id, text, reply_to=reply.reply_to),
                    timeout=self._settings.enforcement.call_timeout_seconds,
                    channel_id=reply.channel_id,
                )
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("message_handling_failed", message_id=event.message_id, error=str(exc))

    async def _handle_join_request(self, request: ChatJoinRequest, bot: Bot) -> None:
        session = self._session(bot)
        kind = RequestKind.INVITE if request.invite_link else RequestKind.JOIN
        event = MembershipRequestEvent(
            kind=kind,
            session_id=session.session_id,
            guild_id=str(request.chat.id),
            user_id=str(request.from_user.id),
            display_name=request.from_user.full_name,
        )
        bind_event_context(session_id=event.session_id, guild_id=event.guild_id, user_id=event.user_id)
        try:
            await self.controller.handle_membership_request(event, session)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("join_request_handling_failed", error=str(exc))

    async def _handle_chat_member(self, update: ChatMemberUpdated, bot: Bot) -> None:
        session = self._session(bot)
        member = update.new_chat_member.user
        status = update.new_chat_member.status
        if status in PRESENT_STATUSES:
            session.observe_member(update.chat.id, member.id, member.full_name)
            return
        session.forget_member(update.chat.id, member.id)
        actor = update.from_user
        kind = removal_kind(status, actor, member.id)
        if kind is None:
            return
        event = MemberRemovedEvent(
            kind=kind,
            session_id=session.session_id,
            guild_id=str(update.chat.id),
            user_id=str(member.id),
            display_name=member.full_name,
            operator_id=str(actor.id),
        )
        bind_event_context(session_id=event.session_id, guild_id=event.guild_id, user_id=event.user_id)
        try:
            if kind == RemovalKind.KICKED and self._settings.accounts.auto_link:
                await self.coordinator.storage.link_account(event.user_id)
            await self.controller.handle_member_removed(event)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("member_removed_handling_failed", error=str(exc))

    async def _handle_my_chat_member(self, update: ChatMemberUpdated, bot: Bot) -> None:
        title = update.chat.title or str(update.chat.id)
        self._session(bot).observe_bot_status(update.chat.id, title, update.new_chat_member.status)
        logger.info(
            "bot_membership_changed",
            session_id=str(bot.id),
            chat_id=update.chat.id,
            status=update.new_chat_member.status,
        )

    async def _handle_ban(self, message: Message, command: CommandObject, bot: Bot) -> None:
        if not await self._authorize(message, bot):
            return
        target = await self._resolve_target(message, command, bot)
        if target is None:
            await message.reply("Usage: /ban <user_id> (or reply to a message)")
            return
        user_id, name = target
        if self._settings.accounts.auto_link:
            await self.coordinator.storage.link_account(user_id)
        await message.reply(await self.controller.ban_command(user_id, name, str(message.from_user.id)))

    async def _handle_unban(self, message: Message, command: CommandObject, bot: Bot) -> None:
        if not await self._authorize(message, bot):
            return
        target = await self._resolve_target(message, command, bot)
        if target is None:
            await message.reply("Usage: /unban <user_id> (or reply to a message)")
            return
        user_id, name = target
        await message.reply(await self.controller.unban_command(user_id, name))

    async def _handle_blacklist(self, message: Message, command: CommandObject, bot: Bot) -> None:
        if not await self._authorize(message, bot):
            return
        page = _parse_int(command.args, default=1)
        await message.reply(await self.controller.blacklist_page(page))

    async def _handle_reset_warn(self, message: Message, command: CommandObject, bot: Bot) -> None:
        if message.chat.type not in GROUP_CHATS:
            await message.reply("Use this command inside the group.")
            return
        if not await self._authorize(message, bot):
            return
        target = await self._resolve_target(message, command, bot)
        if target is None:
            await message.reply("Usage: /resetwarn <user_id> (or reply to a message)")
            return
        user_id, name = target
        await message.reply(await self.controller.reset_violations(user_id, str(message.chat.id), name))

    async def _handle_scan(self, message: Message, bot: Bot) -> None:
        if not await self._authorize(message, bot):
            return
        await message.reply("🧹 Blacklist sweep started.")
        try:
            report = await self.coordinator.scheduler.trigger_now()
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("manual_scan_failed", error=str(exc))
            await message.reply(render(self._settings.messages.operation_fail))
            return
        await message.reply(
            render(self._settings.messages.scan_summary, kicked=report.kicked, failures=report.failures)
        )

    async def _handle_give(self, message: Message, command: CommandObject, bot: Bot) -> None:
        if not await self._authorize(message, bot):
            return
        parsed = await self._resolve_target_and_amount(message, command, bot)
        if parsed is None:
            await message.reply("Usage: /give <user_id> <amount> (or reply with /give <amount>)")
            return
        (user_id, name), amount = parsed
        await message.reply(await self.coordinator.points.give(str(message.from_user.id), user_id, name, amount))

    async def _handle_deduct(self, message: Message, command: CommandObject, bot: Bot) -> None:
        if not await self._authorize(message, bot):
            return
        parsed = await self._resolve_target_and_amount(message, command, bot)
        if parsed is None:
            await message.reply("Usage: /deduct <user_id> <amount> (or reply with /deduct <amount>)")
            return
        (user_id, name), amount = parsed
        await message.reply(await self.coordinator.points.deduct(str(message.from_user.id), user_id, name, amount))

    async def _handle_transfer(self, message: Message, command: CommandObject, bot: Bot) -> None:
        parsed = await self._resolve_target_and_amount(message, command, bot)
        if parsed is None:
            await message.reply("Usage: /transfer <user_id> <amount> (or reply with /transfer <amount>)")
            return
        (user_id, name), amount = parsed
        sender = message.from_user
        await message.reply(
            await self.coordinator.points.transfer(str(sender.id), sender.full_name, user_id, name, amount)
        )

    async def _handle_points(self, message: Message) -> None:
        user = message.from_user
        await message.reply(await self.coordinator.points.query(str(user.id), user.full_name))

    async def _handle_rank(self, message: Message) -> None:
        await message.reply(await self.coordinator.points.ranking())

    async def _authorize(self, message: Message, bot: Bot) -> bool:
        user_id = message.from_user.id if message.from_user else None
        if user_id is None:
            return False
        if self._settings.scanner.notify_admin_id and str(user_id) == self._settings.scanner.notify_admin_id:
            return True
        if message.chat.type in GROUP_CHATS and await self._ensure_admin(bot, message.chat.id, user_id):
            return True
        await message.reply(render(self._settings.messages.permission_denied))
        return False

    async def _ensure_admin(self, bot: Bot, chat_id: int, user_id: int) -> bool:
        try:
            member = await bot.get_chat_member(chat_id, user_id)
        except (TelegramBadRequest, TelegramForbiddenError) as exc:
            logger.warning("admin_check_failed", chat_id=chat_id, user_id=user_id, error=str(exc))
            return False
        return member.status in ADMIN_STATUSES

    async def _resolve_target(
        self,
        message: Message,
        command: CommandObject,
        bot: Bot,
    ) -> Optional[tuple[str, str]]:
        replied = message.reply_to_message
        if replied and replied.from_user:
            return str(replied.from_user.id), replied.from_user.full_name
        args = (command.args or "").split()
        if not args or not args[0].lstrip("-").isdigit():
            return None
        user_id = args[0]
        if len(args) > 1:
            return user_id, " ".join(args[1:])
        ok, user = await call_platform(
            "get_user",
            lambda: self._session(bot).get_user(user_id),
            timeout=self._settings.enforcement.call_timeout_seconds,
            user_id=user_id,
        )
        return user_id, (user.display_name if ok and user else user_id)

    async def _resolve_target_and_amount(
        self,
        message: Message,
        command: CommandObject,
        bot: Bot,
    ) -> Optional[tuple[tuple[str, str], int]]:
        args = (command.args or "").split()
        if not args:
            return None
        replied = message.reply_to_message
        if replied and replied.from_user:
            return (str(replied.from_user.id), replied.from_user.full_name), _parse_int(args[0], default=0)
        if len(args) < 2:
            return None
        target = await self._resolve_target(message, CommandObject(args=args[0]), bot)
        if target is None:
            return None
        return target, _parse_int(args[1], default=0)


def _parse_int(value: Optional[str], *, default: int) -> int:
    try:
        return int((value or "").strip())
    except ValueError:
        return default


@asynccontextmanager
async def telegram_app(settings: WardenSettings):
    app = TelegramWardenApp(settings)
    try:
        yield app
    finally:
        await app.coordinator.shutdown()
        for bot in app.bots:
            await bot.session.close()


def removal_kind(status: ChatMemberStatus, actor: User, member_id: int) -> Optional[RemovalKind]:
    """Classify a departure; only a human administrator's kick counts as KICKED.

    Kicks by bots, other warden sessions included, keep their original ban entry.
    """
    if status == ChatMemberStatus.KICKED and not actor.is_bot and actor.id != member_id:
        return RemovalKind.KICKED
    if status in {ChatMemberStatus.LEFT, ChatMemberStatus.KICKED}:
        return RemovalKind.LEFT
    return None
