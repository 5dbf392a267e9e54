"""structlog configuration shared by the CLI and the web app.

Library modules log through ``logging.getLogger(__name__)``; those records
are rendered by the same structlog chain as structlog loggers, so request
ids bound in the web middleware show up on ingestion lines too.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any

import structlog

LOG_FILE = Path("logs/sinapicalc.log")

# Third-party loggers that are too chatty at INFO during a collection
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "openpyxl")

_installed_handlers: list[logging.Handler] = []


def _renderer() -> Any:
    if os.getenv("JSON_LOGS", "false").lower() == "true":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(level: str | None = None) -> None:
    """Configure structured logging for the application."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(),
        ],
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    # Collections run for minutes; keep a file trail when logs/ exists
    if LOG_FILE.parent.exists():
        handlers.append(logging.FileHandler(LOG_FILE))

    root = logging.getLogger()
    # Repeated calls (CLI callback, app import) replace the previous handlers
    for handler in _installed_handlers:
        root.removeHandler(handler)
    _installed_handlers[:] = handlers
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level_name)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
