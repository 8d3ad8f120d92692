"""
Logging for Stream Archiver.

Console output is colored and compact, the log file is plain and columnar.
Records carry optional `channel` and `recording_id` extras supplied by
ChannelLoggerAdapter, plus the component taken from the logger name
(`stream_archiver.<component>`).
"""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Tuple


ROOT_LOGGER = 'stream_archiver'

# Libraries that log every request or statement at INFO
NOISY_LOGGERS = ('telethon', 'sqlalchemy.engine', 'aiosqlite', 'asyncio')

RESET = "\033[0m"
GRAY = "\033[90m"
CYAN = "\033[96m"
BLUE = "\033[94m"

LEVEL_COLORS = {
    logging.DEBUG: GRAY,
    logging.INFO: "\033[92m",
    logging.WARNING: "\033[93m",
    logging.ERROR: "\033[91m",
    logging.CRITICAL: "\033[95m",
}


def _context(record: logging.LogRecord) -> Tuple[str, str, str]:
    """(component, channel, recording id) of a record; empty strings when absent."""
    component = ""
    if record.name.startswith(ROOT_LOGGER + '.'):
        component = record.name[len(ROOT_LOGGER) + 1:]
    channel = getattr(record, 'channel', None) or ""
    recording = getattr(record, 'recording_id', None) or ""
    return component, channel, recording


class ColoredFormatter(logging.Formatter):
    """`HH:MM:SS LEVEL [channel] <recording> message` with ANSI colors."""

    def format(self, record: logging.LogRecord) -> str:
        _, channel, recording = _context(record)
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        color = LEVEL_COLORS.get(record.levelno, RESET)

        parts = [f"{GRAY}{timestamp}{RESET}", f"{color}{record.levelname:8}{RESET}"]
        if channel:
            parts.append(f"{CYAN}[{channel}]{RESET}")
        if recording:
            parts.append(f"{BLUE}<{recording}>{RESET}")
        parts.append(record.getMessage())

        message = " ".join(parts)
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"
        return message


class FileFormatter(logging.Formatter):
    """Pipe-separated columns, one record per line plus traceback."""

    def format(self, record: logging.LogRecord) -> str:
        component, channel, recording = _context(record)
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')

        message = " | ".join((
            timestamp,
            f"{record.levelname:8}",
            f"{component or '-':12}",
            f"{channel or '-':20}",
            f"{recording or '-':16}",
            record.getMessage(),
        ))
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"
        return message


class ChannelLoggerAdapter(logging.LoggerAdapter):
    """Tags every record with a channel and, for job-level loggers, a recording id."""

    def __init__(self, logger: logging.Logger, channel: str, recording_id: Optional[str] = None):
        extra = {'channel': channel}
        if recording_id:
            extra['recording_id'] = recording_id
        super().__init__(logger, extra)

    def process(self, msg, kwargs):
        # Adapter context wins over per-call extras with the same key
        kwargs['extra'] = {**kwargs.get('extra', {}), **self.extra}
        return msg, kwargs

    def for_recording(self, recording_id: str) -> 'ChannelLoggerAdapter':
        return ChannelLoggerAdapter(self.logger, self.extra['channel'], recording_id)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the application logger.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_file: Path to log file. If empty, logs only to console.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of rotated files to keep.

    Returns:
        The root application logger.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()
    logger.propagate = False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColoredFormatter())
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(FileFormatter())
        logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Application logger, or its `name` child (one per component)."""
    if name:
        return logging.getLogger(f'{ROOT_LOGGER}.{name}')
    return logging.getLogger(ROOT_LOGGER)


def get_channel_logger(channel: str, name: Optional[str] = None) -> ChannelLoggerAdapter:
    """
    Logger adapter for one channel.

    Args:
        channel: Twitch channel login.
        name: Component name, e.g. 'orchestrator' or 'live'.
    """
    return ChannelLoggerAdapter(get_logger(name), channel)
