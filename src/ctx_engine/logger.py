"""Centralized Loguru configuration for ctx-engine."""

import logging
import sys

from loguru import logger

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level:<8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)

# Third-party loggers that are routed through Loguru but kept quiet by default
_NOISY_LOGGERS = ("httpx", "httpcore", "lancedb", "uvicorn.access")


class InterceptHandler(logging.Handler):
    """Forwards standard-library log records (httpx, uvicorn, lancedb) to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


# Replace loguru's default handler with the console sink below
logger.remove()

# INFO until the CLI callback or server applies the configured level
logger.add(sys.stderr, level="INFO", format=_CONSOLE_FORMAT, colorize=True)


def configure_logger(level: str = "INFO", serialize: bool = False) -> None:
    """Swaps the stderr sink for one at `level`; `serialize` emits JSON lines."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="{message}" if serialize else _CONSOLE_FORMAT,
        serialize=serialize,
        colorize=not serialize,
    )


def intercept_stdlib_logging() -> None:
    """Routes standard-library loggers through Loguru for long-running servers."""
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
