"""Observability module for structured, per-research logging."""

from .logging import get_research_logger, research_context, setup_structured_logging

__all__ = [
    "get_research_logger",
    "research_context",
    "setup_structured_logging",
]
