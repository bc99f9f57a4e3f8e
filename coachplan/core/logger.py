"""Logger configuration for the coaching content core."""

import sys
from pathlib import Path

from loguru import logger

from coachplan.config.settings import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def _is_content_event(record) -> bool:
    return "event" in record["extra"]


def setup_logger(
    level: str | None = None,
    log_file: str | None = None,
    events_file: str | None = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """Configure loguru with console output and optional file sinks.

    Args:
        level: Logging level; defaults to settings.log_level
        log_file: Optional path for the full log
        events_file: Optional path for content events only (records bound with
            `event`, see coachplan.audit.content_log), one JSON object per line
        rotation: Log rotation size (e.g., "10 MB", "1 day")
        retention: Log retention period (e.g., "7 days", "1 month")
    """
    level = level or settings.log_level
    logger.remove()

    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message} | {extra}",
            level=level,
            rotation=rotation,
            retention=retention,
            compression="zip",
            backtrace=True,
            diagnose=False,
        )

    if events_file:
        events_path = Path(events_file)
        events_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(events_path, level="INFO", filter=_is_content_event, serialize=True, rotation=rotation, retention=retention)

    logger.info(f"Logger initialized with level={level}")
