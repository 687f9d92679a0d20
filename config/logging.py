# coding: utf-8
"""
Logging configuration with loguru for the Property Unlock service
"""
import re
import sys
from pathlib import Path
from loguru import logger
import sentry_sdk

from config.config import LOG_LEVEL, ENVIRONMENT, SENTRY_DSN


# Standalone 9+ digit runs, optionally prefixed with '+' (payer phone numbers);
# digits inside ids such as unlock-<epoch ms>-... are left alone
_PHONE_RE = re.compile(r"(?<![\w-])\+?\d{9,15}(?![\w-])")

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}"


def mask_phone_numbers(text: str) -> str:
    """Replace all but the last 3 digits of phone-like numbers"""
    return _PHONE_RE.sub(lambda m: "*" * (len(m.group()) - 3) + m.group()[-3:], text)


def _pii_patcher(record) -> None:
    record["message"] = mask_phone_numbers(record["message"])


def setup_logging() -> None:
    """
    Setup loguru sinks: console, rotating files and Sentry

    Payer phone numbers are masked in every sink.
    """
    logger.remove()
    logger.configure(patcher=_pii_patcher)

    logs_dir = Path(__file__).parent.parent / 'logs'
    logs_dir.mkdir(exist_ok=True)

    logger.add(
        sys.stdout,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        ),
        level=LOG_LEVEL,
        colorize=True,
    )

    # All logs, rotated at midnight
    logger.add(
        logs_dir / "unlock_{time:YYYY-MM-DD}.log",
        format=LOG_FORMAT,
        level="DEBUG",
        rotation="00:00",
        retention="7 days",
        compression="zip",
        encoding="utf-8",
    )

    # Errors only, kept longer for payment investigations
    logger.add(
        logs_dir / "error_{time:YYYY-MM-DD}.log",
        format=LOG_FORMAT,
        level="ERROR",
        rotation="00:00",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
    )

    if SENTRY_DSN:
        logger.add(
            sentry_sink,
            level="ERROR",
            format="{message}",
        )

    # Suppress noisy third-party loggers
    import logging
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.ERROR)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    logger.info(f"Unlock service initialized | Environment: {ENVIRONMENT} | Log level: {LOG_LEVEL}")


def sentry_sink(message):
    """
    Forward ERROR and CRITICAL records to Sentry
    """
    record = message.record
    extras = {
        "function": record["function"],
        "file": record["file"].path,
        "line": record["line"],
    }

    if record["exception"]:
        sentry_sdk.capture_exception(record["exception"].value)
        return

    level = "fatal" if record["level"].name == "CRITICAL" else "error"
    sentry_sdk.capture_message(record["message"], level=level, extras=extras)
