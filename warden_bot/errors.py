from __future__ import annotations


class WardenError(Exception):
    """Base class for errors raised by the enforcement engine."""


class NetworkError(WardenError):
    """A ledger HTTP call failed, timed out, or returned an unreadable body."""


class PlatformApiError(WardenError):
    """A chat platform primitive (kick, mute, delete, decline) failed."""


class UnresolvedAccountError(WardenError):
    def __init__(self, external_user_id: str) -> None:
        super().__init__(f"No account is linked to user {external_user_id}")
        self.external_user_id = external_user_id


class TransactionError(WardenError):
    """A storage transaction was aborted and rolled back."""


class ConfigValidationError(WardenError):
    pass


__all__ = [
    "ConfigValidationError",
    "NetworkError",
    "PlatformApiError",
    "TransactionError",
    "UnresolvedAccountError",
    "WardenError",
]
