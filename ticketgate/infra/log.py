"""Logging setup: everything goes through loguru."""

import logging
import sys

from loguru import logger

from .. import config

LOG_FORMAT = " | ".join((
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</>",
    "<lvl>{level:<8}</>",
    "<c>{name}:{function}:{line}</>",
    "{message}",
))


class InterceptHandler(logging.Handler):
    """Route standard logging records (uvicorn, sqlalchemy) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logging(level: str | None = None) -> None:
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level or config.LOG_LEVEL)
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [InterceptHandler()]
        lg.propagate = False
