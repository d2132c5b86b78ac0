"""MCP server for deep research."""

from .config import settings
from .exceptions import ConfigurationError, ResearchEngineError, ResearchTimeoutError, UpstreamError
from .providers import get_llm
from .server import main, serve

__all__ = [
    "main",
    "serve",
    "settings",
    "get_llm",
    "ResearchEngineError",
    "ConfigurationError",
    "ResearchTimeoutError",
    "UpstreamError",
]
