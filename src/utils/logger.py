"""日志配置（structlog，输出到 stderr 与滚动日志文件）"""

import logging
import sys
from logging.handlers import RotatingFileHandler

import structlog

from src.core.config import settings


LOGGER_NAME = "dataset_engine"


def _configure() -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    stdlib_logger = logging.getLogger(LOGGER_NAME)
    stdlib_logger.setLevel(level)
    stdlib_logger.propagate = False
    stdlib_logger.handlers.clear()

    stream_handler = logging.StreamHandler(sys.stderr)
    file_handler = RotatingFileHandler(
        filename=str(settings.log_file),
        maxBytes=10 * 1024 * 1024,
        backupCount=7,
        encoding="utf-8",
    )
    for handler in (stream_handler, file_handler):
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler.setLevel(level)
        stdlib_logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure()

log = structlog.get_logger(LOGGER_NAME)
