"""Structured logging setup shared by the CLI and library users."""

import logging
import sys

import structlog

LOG_FORMATS = ("json", "console")


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Route structlog through stdlib logging at ``level``.

    ``fmt`` selects the final renderer: ``json`` for machine-readable lines,
    ``console`` for local debugging.
    """
    if fmt not in LOG_FORMATS:
        raise ValueError(f"Unknown log format: {fmt}")

    renderer = structlog.processors.JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # stdout is reserved for command output
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=getattr(logging, level.upper()), force=True)
