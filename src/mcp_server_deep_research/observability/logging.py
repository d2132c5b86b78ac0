"""Structured logging with per-research context using structlog and contextvars."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

LOGGER_NAME = "mcp_server_deep_research"

_configured = False


def setup_structured_logging(level: str = "INFO") -> None:
    """Configure structlog with JSON output on stderr and per-research context.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
    """
    global _configured
    if _configured:
        return

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,  # Inject research context
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stdout belongs to the stdio MCP transport
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=getattr(logging, level.upper()))

    _configured = True


def get_research_logger(name: str = LOGGER_NAME) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger carrying the research context."""
    return structlog.get_logger(name)


@contextmanager
def research_context(research_id: str, kind: str, **fields: Any) -> Iterator[structlog.stdlib.BoundLogger]:
    """Bind ``research_id``, ``kind`` and any extra fields to every log line inside the block.

    Nested blocks (a bulk session and its per-company runs) override the outer
    values and restore them on exit. Each asyncio task sees only its own bindings.

    Yields:
        A research logger.
    """
    with structlog.contextvars.bound_contextvars(research_id=research_id, kind=kind, **fields):
        yield get_research_logger()
