from .coordinator import WardenCoordinator
from .telegram_bot import TelegramWardenApp, telegram_app

__all__ = ["TelegramWardenApp", "WardenCoordinator", "telegram_app"]
