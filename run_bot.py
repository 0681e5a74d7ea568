#!/usr/bin/env python3
"""
Entry point for running the Warden enforcement bot.

Usage:
    python run_bot.py

Environment:
    - WARDEN_TELEGRAM_TOKENS  JSON list, one token per bot session
    - WARDEN_LEDGER__BASE_URL
    - WARDEN_SCANNER__NOTIFY_ADMIN_ID

Settings are read by ``load_settings`` (``.env`` by default); invalid settings
stop the process before any session connects.
"""

import asyncio
import sys

from warden_bot import TelegramWardenApp
from warden_bot.config import load_settings
from warden_bot.errors import ConfigValidationError


async def _main() -> None:
    settings = load_settings()
    app = TelegramWardenApp(settings)
    await app.run()


if __name__ == "__main__":
    try:
        asyncio.run(_main())
    except ConfigValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        print("\n\n🛑 Bot shutdown requested by user.")
