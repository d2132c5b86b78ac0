"""Configuration management using Pydantic settings with optional file persistence."""

import json
import os
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Paths ---

APP_NAME = "mcp-server-deep-research"
APP_VERSION = "0.1.0"


def get_config_dir() -> Path:
    """Get the configuration directory (e.g. ~/.config/mcp-server-deep-research)."""
    if os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / ".config")).expanduser()
    else:
        base = Path("~/.config").expanduser()

    path = base / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_default_results_dir() -> Path:
    """Get the default directory for saving reports."""
    base = Path("~/Documents").expanduser()
    if not base.exists():
        base = Path.home()

    path = base / "deep-research-reports"
    return path


CONFIG_FILE = get_config_dir() / "config.json"


def load_config_file() -> dict[str, Any]:
    """Load settings from the JSON config file if it exists."""
    if not CONFIG_FILE.exists():
        return {}

    try:
        text = CONFIG_FILE.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        return json.loads(text)
    except (OSError, json.JSONDecodeError):
        return {}


def save_config_file(config_data: dict[str, Any]) -> None:
    """Save settings to the JSON config file."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(json.dumps(config_data, indent=2), encoding="utf-8")


# Standard environment variable names for API keys (industry convention)
# For providers with multiple common env var names, use a list (first match wins)
STANDARD_ENV_VAR_NAMES: dict[str, str | list[str]] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": ["GEMINI_API_KEY", "GOOGLE_API_KEY"],  # GEMINI_API_KEY takes priority
    "azure_openai": "AZURE_OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "cerebras": "CEREBRAS_API_KEY",
    "xai": "XAI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "vercel": "VERCEL_API_KEY",
}

# Search backends use the same convention
SEARCH_ENV_VAR_NAMES: dict[str, str | list[str]] = {
    "tavily": "TAVILY_API_KEY",
    "firecrawl": "FIRECRAWL_API_KEY",
    "exa": "EXA_API_KEY",
    "bocha": "BOCHA_API_KEY",
}

# Providers that don't require an API key
NO_KEY_PROVIDERS = frozenset({"ollama", "bedrock"})
NO_KEY_SEARCH_PROVIDERS = frozenset({"searxng", "browser", "model"})

ProviderType = Literal[
    "openai",
    "anthropic",
    "google",
    "azure_openai",
    "groq",
    "deepseek",
    "cerebras",
    "xai",
    "mistral",
    "ollama",
    "bedrock",
    "openrouter",
    "vercel",
]

SearchProviderType = Literal["tavily", "firecrawl", "exa", "bocha", "searxng", "browser", "model"]


def resolve_env_key(standard_vars: str | list[str] | None, fallback_var: str) -> Optional[str]:
    """Return the first non-empty value among the standard variable names, then the fallback."""
    if standard_vars:
        # Handle both single string and list of strings
        if isinstance(standard_vars, str):
            standard_vars = [standard_vars]
        for var_name in standard_vars:
            key = os.environ.get(var_name)
            if key:
                return key
    return os.environ.get(fallback_var) or None


class LLMSettings(BaseSettings):
    """LLM provider configuration for the thinking and task models."""

    model_config = SettingsConfigDict(env_prefix="MCP_LLM_")

    provider: ProviderType = Field(default="openai")
    thinking_model: str = Field(default="gpt-4o", description="Model used for planning, review and the final report")
    task_model: str = Field(default="gpt-4o-mini", description="Model used to turn search results into learnings")
    api_key: Optional[SecretStr] = Field(default=None, description="Generic API key override (highest priority)")
    base_url: Optional[str] = Field(default=None, description="Custom base URL for OpenAI-compatible APIs")
    temperature: float = Field(default=0.7)
    reasoning_effort: Optional[str] = Field(default=None, description="Reasoning effort for OpenAI reasoning models")

    # Azure OpenAI specific
    azure_endpoint: Optional[str] = Field(default=None, description="Azure OpenAI endpoint URL")
    azure_api_version: Optional[str] = Field(default="2024-02-01", description="Azure OpenAI API version")

    # AWS Bedrock specific
    aws_region: Optional[str] = Field(default=None, description="AWS region for Bedrock")

    def get_api_key_for_provider(self, provider: str | None = None) -> Optional[str]:
        """Resolve API key with priority: generic > standard > MCP-prefixed.

        Priority order:
        1. MCP_LLM_API_KEY (generic override, applies to any provider)
        2. <PROVIDER>_API_KEY (standard name, e.g., OPENAI_API_KEY, GEMINI_API_KEY)
        3. MCP_LLM_<PROVIDER>_API_KEY (MCP-prefixed fallback)

        Args:
            provider: Provider to resolve for. Defaults to the configured provider.

        Returns:
            The resolved API key or None if not found.
        """
        provider = provider or self.provider
        if self.api_key:
            return self.api_key.get_secret_value()
        return resolve_env_key(STANDARD_ENV_VAR_NAMES.get(provider), f"MCP_LLM_{provider.upper()}_API_KEY")

    def requires_api_key(self, provider: str | None = None) -> bool:
        """Check if a provider requires an API key."""
        return (provider or self.provider) not in NO_KEY_PROVIDERS


class SearchSettings(BaseSettings):
    """Search backend configuration."""

    model_config = SettingsConfigDict(env_prefix="MCP_SEARCH_")

    provider: SearchProviderType = Field(default="tavily")
    api_key: Optional[SecretStr] = Field(default=None, description="Generic search API key override")
    base_url: Optional[str] = Field(default=None, description="Custom base URL (required for self-hosted SearXNG)")
    max_results: int = Field(default=5)
    timeout: float = Field(default=30.0, description="Timeout per search request in seconds")

    def get_api_key_for_provider(self, provider: str | None = None) -> Optional[str]:
        """Resolve a search API key: generic override, standard name, then MCP-prefixed."""
        provider = provider or self.provider
        if self.api_key:
            return self.api_key.get_secret_value()
        return resolve_env_key(SEARCH_ENV_VAR_NAMES.get(provider), f"MCP_SEARCH_{provider.upper()}_API_KEY")


class ResearchSettings(BaseSettings):
    """Deep research engine configuration."""

    model_config = SettingsConfigDict(env_prefix="MCP_RESEARCH_")

    max_concurrency: int = Field(default=5, description="Process-wide cap on concurrent model and search calls")
    fast_timeout: float = Field(default=180.0, description="Session budget for fast research in seconds")
    medium_timeout: float = Field(default=300.0, description="Session budget for medium research in seconds")
    deep_timeout: float = Field(default=600.0, description="Session budget for deep research in seconds")
    language: Optional[str] = Field(default=None, description="Language the report should be written in")
    save_directory: Optional[str] = Field(default=None, description="Directory to save research reports")
    keepalive_interval: float = Field(default=30.0, description="Seconds between SSE keepalive events")
    dedup_window: float = Field(default=5.0, description="Seconds an identical in-flight request is shared")
    bulk_batch_size: int = Field(default=3, description="Companies researched concurrently in bulk mode")
    bulk_item_timeout: float = Field(default=180.0)
    bulk_total_timeout: float = Field(default=1800.0)
    enable_references: bool = Field(default=True)
    enable_citation_image: bool = Field(default=True)


class CacheSettings(BaseSettings):
    """Result cache configuration."""

    model_config = SettingsConfigDict(env_prefix="MCP_CACHE_")

    enabled: bool = Field(default=True)
    max_entries: int = Field(default=500)
    company_ttl: float = Field(default=24 * 60 * 60)
    market_ttl: float = Field(default=12 * 60 * 60)
    bulk_ttl: float = Field(default=24 * 60 * 60)
    free_form_ttl: float = Field(default=6 * 60 * 60)
    persist: bool = Field(default=False, description="Write entries through to SQLite")
    db_path: Optional[str] = Field(default=None, description="SQLite path (default: ~/.config/mcp-server-deep-research/cache.db)")
    cleanup_interval: float = Field(default=600.0, description="Seconds between expired-entry sweeps")


TransportType = Literal["stdio", "streamable-http", "sse"]


class ServerSettings(BaseSettings):
    """Server configuration."""

    model_config = SettingsConfigDict(env_prefix="MCP_SERVER_")

    logging_level: str = Field(default="INFO")
    transport: TransportType = Field(default="streamable-http", description="MCP transport: stdio, streamable-http, or sse")
    host: str = Field(default="127.0.0.1", description="Host for HTTP transports")
    port: int = Field(default=8484, description="Port for HTTP transports")
    results_dir: Optional[str] = Field(default=None, description="Directory to save research reports")


class AppSettings(BaseSettings):
    """Root application settings.

    Priority: Environment Variables > Config File > Defaults
    """

    model_config = SettingsConfigDict(env_prefix="MCP_", extra="ignore")

    llm: LLMSettings = Field(default_factory=LLMSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    research: ResearchSettings = Field(default_factory=ResearchSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    def save(self) -> Path:
        """Save current configuration to file (excluding secrets)."""
        data = self.model_dump(mode="json", exclude_none=True)
        # Remove secret values from saved config
        for group in ("llm", "search"):
            if group in data and "api_key" in data[group]:
                del data[group]["api_key"]
        save_config_file(data)
        return CONFIG_FILE

    def get_results_dir(self) -> Path:
        """Get the results directory, creating if needed."""
        if self.server.results_dir:
            path = Path(self.server.results_dir).expanduser()
        else:
            path = get_default_results_dir()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_cache_db_path(self) -> Path:
        if self.cache.db_path:
            return Path(self.cache.db_path).expanduser()
        return get_config_dir() / "cache.db"


def _load_settings() -> AppSettings:
    """Load settings with file config as base, env vars overlay."""
    file_data = load_config_file()
    groups: dict[str, BaseSettings] = {}
    for name, field in AppSettings.model_fields.items():
        env_group = field.default_factory()
        # Fields set from the environment win over the file
        overrides = env_group.model_dump(include=env_group.model_fields_set)
        groups[name] = type(env_group)(**{**file_data.get(name, {}), **overrides})
    return AppSettings(**groups)


settings = _load_settings()
