from __future__ import annotations

import random
from typing import Optional

import structlog

from ..adapters.ledger import LedgerClient, LedgerOperation
from ..config import EnforcementSettings, MessageTemplates
from ..errors import NetworkError, TransactionError, UnresolvedAccountError
from ..models import (
    DecisionKind,
    EscalationAction,
    KeywordMatch,
    MemberRemovedEvent,
    MembershipRequestEvent,
    MessageDecision,
    MessageEvent,
    OutboundMessage,
    PendingReward,
    RemovalKind,
    RequestDecision,
)
from ..platform.base import PlatformSession
from ..templates import humanize_duration, render
from ..utils.concurrency import call_platform
from .blacklist import BlacklistStore
from .keywords import KeywordFilter
from .violations import ViolationTracker

logger = structlog.get_logger(__name__)


class EnforcementController:
    """Per-event decisions over the ban registry, the escalation tracker and the reward path.

    Handlers never raise platform or ledger failures: each remote call is
    bounded, logged and skipped on error.
    """

    def __init__(
        self,
        blacklist: BlacklistStore,
        tracker: ViolationTracker,
        keyword_filter: KeywordFilter,
        ledger: LedgerClient,
        settings: EnforcementSettings,
        messages: MessageTemplates,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._blacklist = blacklist
        self._tracker = tracker
        self._filter = keyword_filter
        self._ledger = ledger
        self._settings = settings
        self._messages = messages
        self._rng = rng or random.Random()

    async def handle_message(self, event: MessageEvent, session: PlatformSession) -> MessageDecision:
        timeout = self._settings.call_timeout_seconds
        banned = await self._blacklist.is_authority_banned(event.user_id)

        if banned and self._settings.auto_kick_on_speak:
            kicked, _ = await call_platform(
                "kick",
                lambda: session.kick(event.guild_id, event.user_id),
                timeout=timeout,
                guild_id=event.guild_id,
                user_id=event.user_id,
            )
            if kicked:
                logger.info("blacklisted_speaker_kicked", guild_id=event.guild_id, user_id=event.user_id)
                notice = render(self._messages.kick_notice, self._rng, user=event.display_name)
                return MessageDecision(
                    kind=DecisionKind.KICKED,
                    replies=[OutboundMessage(channel_id=event.channel_id, text=notice)],
                )

        match = self._filter.scan(event.text)
        if match is not None:
            return await self._enforce_violation(event, session, match)

        if banned or self._rng.random() >= self._settings.probability:
            return MessageDecision(kind=DecisionKind.NONE)

        logger.debug("reward_pending", user_id=event.user_id, message_id=event.message_id)
        reward = PendingReward(user_id=event.user_id, display_name=event.display_name)
        return MessageDecision(
            kind=DecisionKind.REWARD_PENDING,
            replies=[OutboundMessage(channel_id=event.channel_id, pending_reward=reward)],
        )

    async def _enforce_violation(
        self,
        event: MessageEvent,
        session: PlatformSession,
        match: KeywordMatch,
    ) -> MessageDecision:
        timeout = self._settings.call_timeout_seconds
        logger.info(
            "keyword_violation",
            guild_id=event.guild_id,
            user_id=event.user_id,
            term=match.term,
        )
        await call_platform(
            "delete_message",
            lambda: session.delete_message(event.channel_id, event.message_id),
            timeout=timeout,
            channel_id=event.channel_id,
            message_id=event.message_id,
        )
        threshold = self._settings.mute_threshold
        outcome = await self._tracker.record_violation(event.user_id, event.guild_id, threshold)

        if outcome.action == EscalationAction.MUTE:
            duration = self._settings.mute_duration
            muted, _ = await call_platform(
                "mute",
                lambda: session.mute(event.guild_id, event.user_id, duration),
                timeout=timeout,
                guild_id=event.guild_id,
                user_id=event.user_id,
            )
            replies = []
            if muted:
                text = render(
                    self._messages.mute,
                    self._rng,
                    user=event.display_name,
                    duration=humanize_duration(duration),
                    count=outcome.new_count,
                    threshold=threshold,
                )
                replies.append(OutboundMessage(channel_id=event.channel_id, text=text))
            return MessageDecision(kind=DecisionKind.MUTED, replies=replies, match=match, outcome=outcome)

        text = render(
            self._messages.warn,
            self._rng,
            user=event.display_name,
            count=outcome.new_count,
            threshold=threshold,
            term=match.term,
        )
        return MessageDecision(
            kind=DecisionKind.WARNED,
            replies=[OutboundMessage(channel_id=event.channel_id, text=text)],
            match=match,
            outcome=outcome,
        )

    async def finalize_outbound(self, message: OutboundMessage) -> Optional[str]:
        """Settle a pending reward, if any, and return the text to send (``None`` sends nothing)."""
        reward = message.take_reward()
        if reward is None:
            return message.text or None
        try:
            result = await self._ledger.modify(
                LedgerOperation.RANDOM_ADD,
                reward.user_id,
                reward.display_name,
                1,
            )
        except NetworkError as exc:
            logger.warning("reward_credit_failed", user_id=reward.user_id, error=str(exc))
            return None
        if result.duplicate:
            logger.debug("reward_duplicate_suppressed", user_id=reward.user_id)
            return None
        if not result.ok:
            logger.warning("reward_credit_rejected", user_id=reward.user_id, code=result.code, message=result.message)
            return None
        logger.info("reward_credited", user_id=reward.user_id, score=result.score)
        return render(
            self._messages.add_success,
            self._rng,
            user=reward.display_name,
            score=result.score if result.score is not None else "?",
        )

    async def ban_command(self, target_id: str, display_name: str, operator_id: str) -> str:
        name = display_name or target_id
        try:
            await self._blacklist.ban(target_id, name, operator_id)
        except UnresolvedAccountError:
            return render(self._messages.unresolved_account, self._rng, user=name)
        except TransactionError as exc:
            logger.error("ban_command_failed", target_id=target_id, error=str(exc))
            return render(self._messages.transaction_failed, self._rng, user=name)
        return render(self._messages.ban_success, self._rng, user=name)

    async def unban_command(self, target_id: str, display_name: str = "") -> str:
        name = display_name or target_id
        try:
            await self._blacklist.unban(target_id)
        except UnresolvedAccountError:
            return render(self._messages.unresolved_account, self._rng, user=name)
        except TransactionError as exc:
            logger.error("unban_command_failed", target_id=target_id, error=str(exc))
            return render(self._messages.transaction_failed, self._rng, user=name)
        return render(self._messages.unban_success, self._rng, user=name)

    async def blacklist_page(self, page: int = 1, page_size: int = 20) -> str:
        entries, total = await self._blacklist.list(max(page, 1), page_size)
        if not entries:
            return render(self._messages.blacklist_empty, self._rng)
        header = render(self._messages.blacklist_header, self._rng, page=max(page, 1), total=total)
        lines = [
            f"{entry.display_name} ({entry.external_user_id}) by {entry.operator_id} "
            f"at {entry.created_at:%Y-%m-%d %H:%M}"
            for entry in entries
        ]
        return "\n".join([header, *lines])

    async def reset_violations(self, user_id: str, guild_id: str, display_name: str = "") -> str:
        await self._tracker.reset(user_id, guild_id)
        return render(self._messages.violations_reset, self._rng, user=display_name or user_id)

    async def handle_membership_request(
        self,
        event: MembershipRequestEvent,
        session: PlatformSession,
    ) -> RequestDecision:
        if not await self._blacklist.is_banned(event.user_id):
            # Left for human moderators; never approved automatically.
            return RequestDecision.IGNORED
        rejected, _ = await call_platform(
            "reject_request",
            lambda: session.reject_request(event),
            timeout=self._settings.call_timeout_seconds,
            guild_id=event.guild_id,
            user_id=event.user_id,
            kind=event.kind.value,
        )
        if not rejected:
            logger.warning(
                "membership_request_reject_failed",
                guild_id=event.guild_id,
                user_id=event.user_id,
                kind=event.kind.value,
            )
            return RequestDecision.REJECT_FAILED
        logger.info(
            "membership_request_rejected",
            guild_id=event.guild_id,
            user_id=event.user_id,
            kind=event.kind.value,
        )
        return RequestDecision.REJECTED

    async def handle_member_removed(self, event: MemberRemovedEvent) -> bool:
        """Treat an administrator's manual kick as an explicit ban."""
        if event.kind != RemovalKind.KICKED:
            return False
        operator_id = event.operator_id or "unknown"
        try:
            await self._blacklist.ban(event.user_id, event.display_name or event.user_id, operator_id)
        except (UnresolvedAccountError, TransactionError) as exc:
            logger.warning(
                "kick_ban_failed",
                guild_id=event.guild_id,
                user_id=event.user_id,
                error=str(exc),
            )
            return False
        logger.info("kick_recorded_as_ban", guild_id=event.guild_id, user_id=event.user_id, operator_id=operator_id)
        return True
