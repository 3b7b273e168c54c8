"""Logging setup for crawlhost.

Handlers go on the ``crawlhost`` package logger only; applications that
embed crawlhost keep control of the root logger.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import List, Optional

from .config import get_config_manager

PACKAGE_LOGGER = "crawlhost"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

_RESET = "\033[0m"
_NAME_COLOR = "\033[34m"
_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[91m\033[1m",
}


class ColorFormatter(logging.Formatter):
    """Colors the level name, and crawlhost logger names, on a TTY."""

    def __init__(self, fmt: str = LOG_FORMAT, use_colors: bool = True, stream=None):
        super().__init__(fmt)
        stream = stream if stream is not None else sys.stderr
        self.use_colors = use_colors and getattr(stream, "isatty", lambda: False)()

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors:
            return super().format(record)

        # Other handlers must still see the plain record
        colored = logging.makeLogRecord(record.__dict__)
        color = _LEVEL_COLORS.get(record.levelno, "")
        colored.levelname = f"{color}{record.levelname}{_RESET}"
        if record.name.startswith(PACKAGE_LOGGER):
            colored.name = f"{_NAME_COLOR}{record.name}{_RESET}"
        return super().format(colored)


def _parse_level(level: Optional[str]) -> int:
    resolved = logging.getLevelName(str(level or "WARNING").upper())
    return resolved if isinstance(resolved, int) else logging.INFO


class CrawlHostLogger:
    """Owns the handlers crawlhost installs so they can be replaced."""

    def __init__(self):
        self._handlers: List[logging.Handler] = []

    def setup_logging(
        self,
        level: str = "WARNING",
        log_file: Optional[str] = None,
        use_colors: bool = True
    ) -> None:
        """(Re)install the console handler and, with ``log_file``, a rotating file handler.

        Args:
            level: Log level name; unknown names fall back to INFO
            log_file: Optional log file path
            use_colors: Whether to color console output
        """
        log_level = _parse_level(level)
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.setLevel(log_level)
        self._remove_handlers(package_logger)

        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(ColorFormatter(use_colors=use_colors, stream=sys.stderr))
        self._install(package_logger, console, log_level)

        if log_file:
            path = Path(log_file).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            rotating = logging.handlers.RotatingFileHandler(
                path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS
            )
            rotating.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=FILE_DATE_FORMAT))
            self._install(package_logger, rotating, log_level)

    def _install(self, logger: logging.Logger, handler: logging.Handler, level: int) -> None:
        handler.setLevel(level)
        logger.addHandler(handler)
        self._handlers.append(handler)

    def _remove_handlers(self, logger: logging.Logger) -> None:
        for handler in self._handlers:
            logger.removeHandler(handler)
            handler.close()
        self._handlers = []


_crawlhost_logger: Optional[CrawlHostLogger] = None


def get_crawlhost_logger() -> CrawlHostLogger:
    """Get the global CrawlHostLogger instance."""
    global _crawlhost_logger
    if _crawlhost_logger is None:
        _crawlhost_logger = CrawlHostLogger()
    return _crawlhost_logger


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Configure crawlhost logging, filling gaps from ``global.*`` settings."""
    config_manager = get_config_manager()
    if level is None:
        level = config_manager.get_setting("global.log_level", "WARNING")
    if log_file is None:
        log_file = config_manager.get_setting("global.log_file")

    get_crawlhost_logger().setup_logging(level=level, log_file=log_file)


def get_logger(name: str) -> logging.Logger:
    """Logger for a crawlhost module, usually ``get_logger(__name__)``."""
    return logging.getLogger(name)
