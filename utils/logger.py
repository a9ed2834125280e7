"""
Logging configuration using loguru.
"""

import logging
import sys
from pathlib import Path
from loguru import logger

from config.settings import settings

# Chatty stdlib loggers from the scheduler and the websocket/HTTP stacks
QUIET_LOGGERS = ("apscheduler", "websockets", "urllib3")


def setup_logger():
    """Configure loguru logger with console, rotating file and trade audit sinks."""
    logger.remove()

    log_path = Path(settings.logging.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger.add(
        sys.stdout,
        level=settings.logging.level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        colorize=True
    )

    logger.add(
        settings.logging.log_file,
        level=settings.logging.level,
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}",
        rotation=settings.logging.rotation,
        retention=settings.logging.retention,
        compression="zip"
    )

    # Audit trail: entries, closes, heals and backfills
    logger.add(
        settings.logging.trade_log_file,
        level="INFO",
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {message}",
        filter=lambda record: "TRADE" in record["message"],
        rotation="1 day",
        retention="30 days"
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(f"Logger initialized ({settings.exchange.network})")
    return logger


# Initialize logger on import
log = setup_logger()
