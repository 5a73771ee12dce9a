"""Structured JSON logging to stdout and a log file."""
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from pyramid_trader.core.config import LoggingConfig, logging_config


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure structlog on top of stdlib logging.

    Safe to call more than once: the file handler for a given path is only
    attached once.
    """
    config = config or logging_config
    level = getattr(logging, config.log_level.upper())

    log_path = Path(config.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    resolved = str(log_path.resolve())
    for handler in root_logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == resolved:
            return

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(level)
    root_logger.addHandler(file_handler)
