from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional


class Authority(IntEnum):
    BANNED = 0
    MEMBER = 1


class EscalationAction(str, Enum):
    WARN = "warn"
    MUTE = "mute"


class DecisionKind(str, Enum):
    KICKED = "kicked"
    WARNED = "warned"
    MUTED = "muted"
    REWARD_PENDING = "reward_pending"
    NONE = "none"


class RequestKind(str, Enum):
    JOIN = "join"
    INVITE = "invite"


class RequestDecision(str, Enum):
    REJECTED = "rejected"
    IGNORED = "ignored"
    REJECT_FAILED = "reject_failed"


class RemovalKind(str, Enum):
    LEFT = "left"
    KICKED = "kicked"


@dataclass(slots=True)
class BlacklistEntry:
    id: int
    account_id: int
    external_user_id: str
    display_name: str
    created_at: datetime
    operator_id: str


@dataclass(slots=True)
class KeywordViolation:
    id: int
    external_user_id: str
    guild_id: str
    count: int
    last_violation_at: datetime


@dataclass(slots=True)
class EscalationOutcome:
    new_count: int
    action: EscalationAction


@dataclass(slots=True, frozen=True)
class KeywordMatch:
    term: str
    offset: int


@dataclass(slots=True)
class ScanReport:
    kicked: int = 0
    failures: int = 0


@dataclass(slots=True)
class GuildMember:
    user_id: str
    display_name: str = ""


@dataclass(slots=True)
class PlatformUser:
    user_id: str
    display_name: str
    is_bot: bool = False


@dataclass(slots=True)
class MessageEvent:
    session_id: str
    guild_id: str
    channel_id: str
    message_id: str
    user_id: str
    display_name: str
    text: str
    timestamp: datetime


@dataclass(slots=True)
class MembershipRequestEvent:
    kind: RequestKind
    session_id: str
    guild_id: str
    user_id: str
    display_name: str = ""


@dataclass(slots=True)
class MemberRemovedEvent:
    kind: RemovalKind
    session_id: str
    guild_id: str
    user_id: str
    display_name: str = ""
    operator_id: Optional[str] = None


@dataclass(slots=True, frozen=True)
class PendingReward:
    """A ledger credit decided on the inbound path, settled on the outbound path."""

    user_id: str
    display_name: str


@dataclass(slots=True)
class OutboundMessage:
    channel_id: str
    text: str = ""
    reply_to: Optional[str] = None
    pending_reward: Optional[PendingReward] = None

    def take_reward(self) -> Optional[PendingReward]:
        reward, self.pending_reward = self.pending_reward, None
        return reward


@dataclass(slots=True)
class MessageDecision:
    kind: DecisionKind
    replies: list[OutboundMessage] = field(default_factory=list)
    match: Optional[KeywordMatch] = None
    outcome: Optional[EscalationOutcome] = None


__all__ = [
    "Authority",
    "BlacklistEntry",
    "DecisionKind",
    "EscalationAction",
    "EscalationOutcome",
    "GuildMember",
    "KeywordMatch",
    "KeywordViolation",
    "MemberRemovedEvent",
    "MembershipRequestEvent",
    "MessageDecision",
    "MessageEvent",
    "OutboundMessage",
    "PendingReward",
    "PlatformUser",
    "RemovalKind",
    "RequestDecision",
    "RequestKind",
    "ScanReport",
]
