"""Logging configuration for rac daemon."""

import logging
from pathlib import Path

from rac.config import Config

# Module-level logger cache
_logger: logging.Logger | None = None

# Third-party loggers that are too chatty at INFO
_NOISY_LOGGERS = ("aiohttp.access", "asyncio")


def setup_logging(config: Config) -> logging.Logger:
    """Set up logging based on configuration.

    The "rac" logger gets a console handler and, when ``log_file`` is
    configured, a file handler. Setup runs once per process.

    Args:
        config: Configuration object with log settings.

    Returns:
        Configured logger instance.
    """
    global _logger

    if _logger is not None:
        return _logger

    level = getattr(logging, config.log_level.upper(), logging.INFO)

    logger = logging.getLogger("rac")
    logger.setLevel(level)
    logger.handlers.clear()

    # 2025-01-27 10:30:45 [INFO] rac.tunnel: message
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    formatter.datefmt = "%Y-%m-%d %H:%M:%S"

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.propagate = False

    if level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    _logger = logger
    return logger


def reset_logging() -> None:
    """Reset logging state. Used for testing."""
    global _logger
    if _logger is not None:
        _logger.handlers.clear()
        _logger = None
