import logging
import sys

from loguru import logger

LOG_FORMAT = " | ".join((
    "<g>{time:YYYY-MM-DD HH:mm:ss.SSS}</>",
    "<lvl>{level:<8}</>",
    "<c>{name}:{function}:{line}</>",
    "{message}",
))


class InterceptHandler(logging.Handler):
    """Route stdlib logging (uvicorn, sqlalchemy) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # find the caller the record originated from
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level, enqueue=False)
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


def integrity_alert(message: str, **context) -> None:
    # invariant violations indicate a bug, not a user error
    logger.bind(integrity_alert=True, **context).critical(message)
