"""
Host Agent - Logging Setup

structlog on top of the stdlib logging module. The system log file gets JSON
lines; stderr gets the same events as key=value text.
"""

import logging
import sys
from pathlib import Path

import structlog


def shared_processors() -> list:
    """Processors applied to every event before rendering."""
    return [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _handler(handler: logging.Handler, renderer) -> logging.Handler:
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=shared_processors(),
    ))
    return handler


def configure_logging(level: str = "INFO", system_log: str = "logs/system.log") -> None:
    """Configure stdlib handlers and structlog.

    Raises:
        OSError: if the system log file cannot be opened.
    """
    path = Path(system_log)
    path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(path, encoding="utf-8")

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.addHandler(_handler(file_handler, structlog.processors.JSONRenderer()))
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), structlog.dev.ConsoleRenderer(
        colors=False, exception_formatter=structlog.dev.plain_traceback,
    )))
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def flush_logging() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()
