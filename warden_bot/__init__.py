"""
Warden membership enforcement bot.

Keeps a global ban registry, escalates keyword violations per guild, and
reconciles live group membership against the registry across every connected
bot session. The aiogram adapter is one thin layer on top of the
platform-independent enforcement core.
"""

from .services.coordinator import WardenCoordinator
from .services.telegram_bot import TelegramWardenApp, telegram_app

__all__ = ["TelegramWardenApp", "WardenCoordinator", "telegram_app"]
