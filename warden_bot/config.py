from __future__ import annotations

import re
from typing import Any, Union

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigValidationError

Template = Union[str, list[str]]


class EnforcementSettings(BaseModel):
    probability: float = Field(default=0.1, ge=0, le=1)
    auto_kick_on_speak: bool = True
    keywords: list[str] = Field(default_factory=list)
    mute_threshold: int = Field(default=3, ge=1)
    mute_duration: int = Field(default=600, ge=60, description="Mute length in seconds.")
    markup_patterns: list[str] = Field(
        default_factory=list,
        description="Extra regexes for inline markup stripped before keyword matching.",
    )
    call_timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("keywords")
    @classmethod
    def _keywords_not_blank(cls, value: list[str]) -> list[str]:
        if any(not keyword.strip() for keyword in value):
            raise ValueError("keywords must not contain empty entries")
        return value

    @field_validator("markup_patterns")
    @classmethod
    def _patterns_compile(cls, value: list[str]) -> list[str]:
        for pattern in value:
            if not pattern:
                raise ValueError("markup pattern must not be empty")
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid markup pattern {pattern!r}: {exc}") from exc
        return value


class ScannerSettings(BaseModel):
    scan_schedule: str = Field(default="0 */6 * * *", description="Crontab expression; empty disables.")
    notify_admin_id: str = ""
    scan_on_startup: bool = False

    @field_validator("scan_schedule")
    @classmethod
    def _schedule_parses(cls, value: str) -> str:
        value = value.strip()
        if value:
            try:
                CronTrigger.from_crontab(value)
            except ValueError as exc:
                raise ValueError(f"invalid scan schedule {value!r}: {exc}") from exc
        return value


class LedgerSettings(BaseModel):
    base_url: str = Field(default="http://localhost:3000", pattern=r"^https?://")
    modify_path: str = "points/modify"
    query_path: str = "points/query"
    rank_path: str = "points/ranking"
    timeout_seconds: float = Field(default=10.0, gt=0)
    connect_attempts: int = Field(default=2, ge=1)
    rank_limit: int = Field(default=10, ge=1)


class MessageTemplates(BaseModel):
    warn: Template = "⚠️ %user%, that word is not allowed here (%count%/%threshold%)."
    mute: Template = "🔇 %user% muted for %duration% after repeated violations."
    kick_notice: Template = "🚫 %user% is blacklisted and has been removed."
    add_success: Template = [
        "%user% +1 point, now at %score%",
        "Nice one %user%! You earned a point, total %score%",
    ]
    give_success: Template = "Gave %amount% points to %target%"
    deduct_success: Template = "Deducted %amount% points from %target%"
    transfer_success: Template = "Transferred %amount% points to %target%"
    query_success: Template = ["Current points: %score% (rank %rank%)", "You have %score% points (rank %rank%)"]
    rank_success: Template = "🏆 Points ranking:\n%rank%"
    operation_fail: Template = "Operation failed"
    insufficient_balance: Template = "Not enough points for that."
    invalid_amount: Template = "Amount must be a positive whole number."
    ban_success: Template = "⛔ %user% added to the blacklist."
    unban_success: Template = "✅ %user% removed from the blacklist."
    unresolved_account: Template = "User %user% has no linked account."
    transaction_failed: Template = "Could not update the blacklist, nothing was changed."
    request_rejected: Template = "Declined membership request from blacklisted user %user%."
    scan_summary: Template = "🧹 Blacklist sweep finished: %kicked% kicked, %failures% failures."
    blacklist_header: Template = "📋 Blacklist (page %page%, %total% total):"
    blacklist_empty: Template = "The blacklist is empty."
    violations_reset: Template = "Violation counter for %user% reset."
    permission_denied: Template = "You must be a chat admin to do that."


class StorageSettings(BaseModel):
    sqlite_path: str = "warden.db"


class AccountSettings(BaseModel):
    auto_link: bool = Field(default=True, description="Link unseen senders to a fresh account.")


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Logging level: DEBUG, INFO, WARNING, ERROR")
    use_json: bool = Field(default=False, description="Use JSON format instead of colored output")


class WardenSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WARDEN_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    telegram_tokens: list[str] = Field(..., min_length=1, description="One bot token per session.")
    enforcement: EnforcementSettings = EnforcementSettings()
    scanner: ScannerSettings = ScannerSettings()
    ledger: LedgerSettings = LedgerSettings()
    messages: MessageTemplates = MessageTemplates()
    storage: StorageSettings = StorageSettings()
    accounts: AccountSettings = AccountSettings()
    logging: LoggingSettings = LoggingSettings()


def load_settings(**overrides: Any) -> WardenSettings:
    try:
        return WardenSettings(**overrides)
    except ValidationError as exc:
        raise ConfigValidationError(str(exc)) from exc
