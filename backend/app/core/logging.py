"""
structlog setup for the reservation service.

Production emits one JSON object per line; development gets the coloured
console renderer. Request handlers bind the cart session (and reservation
id where known) into contextvars so every line logged while serving that
request carries them.
"""
import logging
import sys
from typing import Any, List

import structlog

# Library loggers that are too chatty at INFO
_NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncio")


def _processor_chain(json_format: bool) -> List[Any]:
    chain: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_format:
        chain.append(structlog.processors.JSONRenderer())
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=True))
    return chain


def setup_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """Route stdlib logging to stdout and configure structlog on top of it."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if level == logging.DEBUG else logging.WARNING)

    structlog.configure(
        processors=_processor_chain(json_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_log_context(**values: Any) -> None:
    """Attach key/value pairs (cart_session_id, reservation_id, ...) to the current request's log lines."""
    structlog.contextvars.bind_contextvars(**{k: v for k, v in values.items() if v is not None})


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
