"""Logging setup.

Every module logs through ``structlog.get_logger("suiterunner.<area>")``;
this module routes those records through the standard library so a single
handler decides where they go and how they look.
"""

import logging
import sys
from typing import Union

import structlog

BASE_LOGGER_NAME = "suiterunner"


def _level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def setup_logging(level: Union[int, str] = logging.WARNING, json_logs: bool = False) -> None:
    """Configure structlog for the whole application.

    Log records go to stderr so they never mix with run progress on stdout.

    Args:
        level: Minimum level, as a number or a name such as ``"INFO"``
        json_logs: Render one JSON object per line instead of console output
    """
    level = _level(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if json_logs:
        processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    else:
        processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=processors,
            foreign_pre_chain=[structlog.stdlib.add_logger_name, structlog.stdlib.add_log_level],
        )
    )

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        existing.close()
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    structlog.get_logger(BASE_LOGGER_NAME).debug(
        "Logging configured",
        level=logging.getLevelName(level),
        json_logs=json_logs,
    )
