"""Structured logging configuration.

Supports two modes via SITESCOUT_LOG_FORMAT:
- "json" (default): JSON log lines carrying the current scrape_id
- "text" (for development): human-readable log lines
"""

import contextvars
import logging
import sys

from pythonjsonlogger.json import JsonFormatter

_scrape_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    "scrape_id", default="-"
)


def get_scrape_id() -> str:
    return _scrape_id.get()


def set_scrape_id(scrape_id: str) -> contextvars.Token:
    """Bind a scrape id to the current task; returns a token for reset."""
    return _scrape_id.set(scrape_id)


def reset_scrape_id(token: contextvars.Token) -> None:
    _scrape_id.reset(token)


class ScrapeContextFilter(logging.Filter):
    """Inject scrape_id into every log record."""

    def filter(self, record):
        record.scrape_id = get_scrape_id()
        return True


class PlaywrightPipeFilter(logging.Filter):
    """Suppress Playwright's 'pipe closed by peer' warnings.

    A dying browser context logs this once per pending write.
    """

    def filter(self, record):
        msg = record.getMessage() if hasattr(record, "getMessage") else str(record.msg)
        if "pipe closed by peer" in msg:
            return False
        return True


def configure_logging(log_format: str = "json", log_level: str = "INFO", stream=None):
    """Configure the root logger with the specified format.

    Args:
        log_format: "json" or "text"
        log_level: Python log level name
        stream: Output stream, stdout by default
    """
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(ScrapeContextFilter())
    handler.addFilter(PlaywrightPipeFilter())

    if log_format == "json":
        formatter = JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s %(scrape_id)s",
            rename_fields={
                "levelname": "level",
                "name": "logger",
                "asctime": "timestamp",
            },
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(scrape_id)s] %(message)s"
        )

    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    logging.getLogger("playwright").setLevel(logging.ERROR)
    logging.getLogger("httpx").setLevel(logging.WARNING)
