"""
Logging Configuration
Structured logging with loguru, with stdlib logging routed into the same sinks
Source: https://github.com/Delgan/loguru
Verified: 2025-11-14
"""

import logging
import sys
from pathlib import Path

from loguru import logger

HUMAN_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[name]}:{function}:{line} - {message}"


class InterceptHandler(logging.Handler):
    """
    Forward stdlib ``logging`` records to loguru.

    Services log through ``logging.getLogger(__name__)``; this handler keeps
    their output in the loguru sinks with the original logger name.

    Source: https://loguru.readthedocs.io/en/stable/overview.html#entirely-compatible-with-standard-logging
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk back to the frame that issued the stdlib call
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(name=record.name).opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    json_logs: bool = False,
) -> None:
    """
    Install the stderr sink, an optional rotating file sink and the stdlib bridge.

    ``json_logs`` serializes every record, which production log shippers expect.
    Calling this again replaces the previous sinks.
    """
    logger.remove()
    logger.configure(extra={"name": "app"})

    if json_logs:
        logger.add(
            sys.stderr,
            format="{message}",
            level=level,
            serialize=True,
        )
    else:
        logger.add(
            sys.stderr,
            format=HUMAN_FORMAT,
            level=level,
            colorize=True,
        )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_file,
            rotation="100 MB",
            retention="30 days",
            compression="zip",
            format=FILE_FORMAT,
            level=level,
            serialize=json_logs,
        )

    # Route stdlib loggers (services, uvicorn, sqlalchemy) through loguru
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info(f"Logging configured: level={level}, json_logs={json_logs}")


def get_logger(name: str = __name__):  # type: ignore[no-untyped-def]
    """
    Loguru logger bound to ``name`` so records show their origin module.

    Example:
        >>> from src.utils.logging import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Claim sent")
    """
    return logger.bind(name=name)
