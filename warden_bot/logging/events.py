from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

RESET = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"
GRAY = "\033[90m"
CYAN = "\033[96m"
BLUE = "\033[94m"
YELLOW = "\033[93m"
GREEN = "\033[92m"

LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}

NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiogram": logging.INFO,
    "aiogram.event": logging.WARNING,
    "apscheduler": logging.WARNING,
    "aiosqlite": logging.WARNING,
}


def _paint(value: Any) -> str:
    if value is None:
        return f"{DIM}None{RESET}"
    if isinstance(value, (bool, int, float)):
        return f"{YELLOW}{value}{RESET}"
    if isinstance(value, str):
        return f"{GREEN}{value}{RESET}"
    return str(value)


class ColoredConsoleRenderer:
    """``[12:00:00] INFO     scan_finished | kicked=2 | failures=0`` with ANSI colors on a TTY."""

    def __init__(self, colored: bool = True) -> None:
        self.colored = colored and sys.stdout.isatty()
        self._plain = structlog.processors.KeyValueRenderer(key_order=["timestamp", "level", "event"])

    def __call__(self, logger: Any, name: str, event_dict: dict) -> str:
        if not self.colored:
            return self._plain(logger, name, event_dict)
        timestamp = event_dict.pop("timestamp", "")
        level = str(event_dict.pop("level", "info")).upper()
        event = event_dict.pop("event", "")
        parts = []
        if timestamp:
            parts.append(f"{GRAY}[{timestamp}]{RESET}")
        parts.append(f"{LEVEL_COLORS.get(level, '')}{BOLD}{level:8}{RESET}")
        parts.append(f"{CYAN}{event}{RESET}")
        if event_dict:
            separator = f" {DIM}|{RESET} "
            parts.append(
                f"{DIM}|{RESET} "
                + separator.join(f"{BLUE}{key}{RESET}={_paint(value)}" for key, value in event_dict.items())
            )
        return " ".join(parts)


def setup_logging(level: int = logging.INFO, use_json: bool = False) -> None:
    """
    Configure structlog for the engine and the stdlib root logger for aiogram,
    httpx and APScheduler.

    Args:
        level: Logging level (default: INFO)
        use_json: Render JSON lines instead of colored console output
    """
    renderer = structlog.processors.JSONRenderer() if use_json else ColoredConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)-8s %(name)s %(message)s", "%H:%M:%S"))
    logging.basicConfig(level=level, handlers=[handler], force=True)
    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(noisy_level, level))


def bind_event_context(**kwargs: Any) -> None:
    """Attach update-scoped fields (session, guild, user) to every log line of the current task."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**kwargs)
