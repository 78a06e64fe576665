"""Logging configuration for the workflow engine."""

import logging
import os
import time
from logging.handlers import TimedRotatingFileHandler

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
LEVEL_NAMES = ("debug", "info", "warning", "error")

# Third-party loggers that are chatty at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class SizeAndTimeRotatingHandler(TimedRotatingFileHandler):
    """Rotates at midnight or when the file grows past `max_bytes`."""

    def __init__(self, filename, max_bytes, backup_count=0, **kwargs):
        self.max_bytes = max_bytes
        super().__init__(filename, backupCount=backup_count, **kwargs)

    def shouldRollover(self, record):
        if int(time.time()) >= self.rolloverAt:
            return 1

        if self.stream and self.max_bytes > 0:
            self.stream.seek(0, os.SEEK_END)
            if self.stream.tell() >= self.max_bytes:
                return 1
        return 0

    def doRollover(self):
        super().doRollover()
        self.rolloverAt = self.computeRollover(int(time.time()))


def parse_level(name: str) -> int:
    """Map a CLI level name (debug/info/warning/error) to a logging level."""
    if not name or name.lower() not in LEVEL_NAMES:
        raise ValueError(f"log level must be one of {', '.join(LEVEL_NAMES)}")
    return getattr(logging, name.upper())


def configure_logging(
    log_dir: str | None = "logs",
    log_file: str = "loopflow.log",
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 7,
    console: bool = True,
) -> logging.Logger:
    """Configure the root logger.

    Args:
        log_dir: Directory for the rotating log file; None disables file logging.
        log_file: Log file name.
        level: Logging level for the root logger and console.
        max_bytes: Max file size before rotation.
        backup_count: Number of rotated files to keep.
        console: Whether to also log to stderr.

    Returns:
        Configured root logger.
    """
    logger = logging.getLogger()
    logger.setLevel(level)
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = SizeAndTimeRotatingHandler(
            filename=os.path.join(log_dir, log_file),
            when="midnight",
            interval=1,
            max_bytes=max_bytes,
            backup_count=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return logger
