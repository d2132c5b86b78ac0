"""Text model and search provider factory using browser-use native chat models."""

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

# Import available chat models from browser-use
from browser_use import (
    ChatAnthropic,
    ChatAzureOpenAI,
    ChatGoogle,
    ChatGroq,
    ChatOllama,
    ChatOpenAI,
    ChatVercel,
)

# These are available via direct import but not in __all__
from browser_use.llm.aws.chat_bedrock import ChatAWSBedrock
from browser_use.llm.cerebras.chat import ChatCerebras
from browser_use.llm.deepseek.chat import ChatDeepSeek
from browser_use.llm.messages import SystemMessage, UserMessage
from browser_use.llm.openrouter.chat import ChatOpenRouter

from .config import NO_KEY_PROVIDERS, NO_KEY_SEARCH_PROVIDERS, SEARCH_ENV_VAR_NAMES, STANDARD_ENV_VAR_NAMES, AppSettings
from .exceptions import ConfigurationError, UpstreamError

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel

    from .research.models import ModelConfig
    from .search import SearchProvider

logger = logging.getLogger(__name__)

PROVIDER_DISPLAY_NAMES: dict[str, str] = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "google": "Google Gemini",
    "azure_openai": "Azure OpenAI",
    "groq": "Groq",
    "deepseek": "DeepSeek",
    "cerebras": "Cerebras",
    "xai": "xAI",
    "mistral": "Mistral",
    "ollama": "Ollama",
    "bedrock": "AWS Bedrock",
    "openrouter": "OpenRouter",
    "vercel": "Vercel AI Gateway",
    "tavily": "Tavily",
    "firecrawl": "Firecrawl",
    "exa": "Exa",
    "bocha": "Bocha",
}

# OpenAI-compatible vendors served through ChatOpenAI
OPENAI_COMPATIBLE_BASE_URLS: dict[str, str] = {
    "xai": "https://api.x.ai/v1",
    "mistral": "https://api.mistral.ai/v1",
}

# Chat model classes that accept a temperature argument
TEMPERATURE_PROVIDERS = frozenset({"openai", "azure_openai", "anthropic", "google", "groq", "deepseek", "xai", "mistral", "openrouter"})

OPENAI_REASONING_PREFIXES = ("o1", "o3", "o4", "gpt-5")

PROVIDER_NAMES = (
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
)
SEARCH_PROVIDER_NAMES = ("tavily", "firecrawl", "exa", "bocha", "searxng", "browser", "model")


class ModelQuirk(str, Enum):
    """Vendor constraints that change how a model must be called."""

    DROP_TEMPERATURE = "drop_temperature"
    CLAMP_TEMPERATURE = "clamp_temperature"
    REASONING_EFFORT = "reasoning_effort"


def detect_quirks(provider: str, model: str) -> frozenset[ModelQuirk]:
    """Classify a provider/model pair once, up front."""
    name = model.lower().rsplit("/", 1)[-1]
    quirks: set[ModelQuirk] = set()
    match provider:
        case "openai" | "azure_openai":
            if name.startswith(OPENAI_REASONING_PREFIXES) and "chat" not in name:
                quirks.update({ModelQuirk.DROP_TEMPERATURE, ModelQuirk.REASONING_EFFORT})
        case "anthropic" | "bedrock":
            quirks.add(ModelQuirk.CLAMP_TEMPERATURE)
        case "xai":
            if "reasoning" in name or name.startswith(("grok-3-mini", "grok-4")):
                quirks.add(ModelQuirk.DROP_TEMPERATURE)
        case "deepseek":
            if "reasoner" in name:
                quirks.add(ModelQuirk.DROP_TEMPERATURE)
    return frozenset(quirks)


def normalize_model_options(
    provider: str,
    model: str,
    temperature: float | None = None,
    reasoning_effort: str | None = None,
) -> dict[str, Any]:
    """Build the keyword options a chat model accepts for this provider/model pair."""
    quirks = detect_quirks(provider, model)
    options: dict[str, Any] = {}
    if temperature is not None and provider in TEMPERATURE_PROVIDERS and ModelQuirk.DROP_TEMPERATURE not in quirks:
        if ModelQuirk.CLAMP_TEMPERATURE in quirks:
            temperature = min(temperature, 1.0)
        options["temperature"] = temperature
    elif ModelQuirk.DROP_TEMPERATURE in quirks and provider in ("openai", "azure_openai"):
        # ChatOpenAI sends its own default unless told not to
        options["temperature"] = None
    if reasoning_effort and ModelQuirk.REASONING_EFFORT in quirks:
        options["reasoning_effort"] = reasoning_effort
    return options


def missing_key_message(provider: str, model: str, env_vars: str | list[str] | None, generic_var: str) -> str:
    display = PROVIDER_DISPLAY_NAMES.get(provider, provider)
    names = [env_vars] if isinstance(env_vars, str) else list(env_vars or [])
    hint = " or ".join([*names, generic_var])
    return f"No {display} API key found for {model}. Set the {hint} environment variable or pass an API key in the request."


def get_llm(
    provider: str,
    model: str,
    api_key: str | None = None,
    base_url: str | None = None,
    **kwargs,
) -> "BaseChatModel":
    """Create LLM instance using browser-use native providers.

    Supports 13 providers:
    - openai: OpenAI GPT and reasoning models
    - anthropic: Claude models
    - google: Gemini models
    - azure_openai: Azure-hosted OpenAI models
    - groq: Groq-hosted models
    - deepseek: DeepSeek models
    - cerebras: Cerebras models
    - xai: Grok models (OpenAI-compatible endpoint)
    - mistral: Mistral models (OpenAI-compatible endpoint)
    - ollama: Local Ollama models (no API key required)
    - bedrock: AWS Bedrock models (uses AWS credentials)
    - openrouter: OpenRouter API
    - vercel: Vercel AI Gateway

    Args:
        provider: LLM provider name
        model: Model name/identifier
        api_key: API key for the provider (not required for ollama/bedrock)
        base_url: Custom base URL for OpenAI-compatible APIs
        **kwargs: Provider-specific options:
            - temperature: Sampling temperature (adjusted per model quirks)
            - reasoning_effort: Reasoning effort for OpenAI reasoning models
            - azure_endpoint: Azure OpenAI endpoint URL
            - azure_api_version: Azure OpenAI API version (default: 2024-02-01)
            - aws_region: AWS region for Bedrock

    Returns:
        Configured BaseChatModel instance

    Raises:
        ConfigurationError: If provider is unsupported or API key is missing
    """
    # Check if API key is required
    requires_api_key = provider not in NO_KEY_PROVIDERS and not base_url
    if requires_api_key and not api_key:
        raise ConfigurationError(missing_key_message(provider, model, STANDARD_ENV_VAR_NAMES.get(provider), "MCP_LLM_API_KEY"))

    options = normalize_model_options(provider, model, kwargs.get("temperature"), kwargs.get("reasoning_effort"))

    try:
        match provider:
            case "openai":
                return ChatOpenAI(model=model, api_key=api_key, base_url=base_url, **options)

            case "xai" | "mistral":
                return ChatOpenAI(model=model, api_key=api_key, base_url=base_url or OPENAI_COMPATIBLE_BASE_URLS[provider], **options)

            case "anthropic":
                return ChatAnthropic(model=model, api_key=api_key, **options)

            case "google":
                return ChatGoogle(model=model, api_key=api_key, **options)

            case "azure_openai":
                azure_endpoint = kwargs.get("azure_endpoint")
                azure_api_version = kwargs.get("azure_api_version") or "2024-02-01"
                if not azure_endpoint:
                    raise ConfigurationError("Azure OpenAI requires AZURE_OPENAI_ENDPOINT or MCP_LLM_AZURE_ENDPOINT to be set.")
                return ChatAzureOpenAI(
                    model=model,
                    api_key=api_key,
                    azure_endpoint=azure_endpoint,
                    api_version=azure_api_version,
                    **options,
                )

            case "groq":
                return ChatGroq(model=model, api_key=api_key, **options)

            case "deepseek":
                return ChatDeepSeek(model=model, api_key=api_key, **options)

            case "cerebras":
                return ChatCerebras(model=model, api_key=api_key)

            case "ollama":
                return ChatOllama(model=model, host=base_url)

            case "bedrock":
                aws_region = kwargs.get("aws_region")
                return ChatAWSBedrock(model=model, aws_region=aws_region)

            case "openrouter":
                return ChatOpenRouter(model=model, api_key=api_key, **options)

            case "vercel":
                return ChatVercel(model=model, api_key=api_key)

            case _:
                raise ConfigurationError(f"Unsupported provider: {provider}")

    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"Failed to initialize {provider} LLM: {e}") from e


@runtime_checkable
class TextModel(Protocol):
    """Anything that turns a prompt into text."""

    provider: str
    model: str

    async def generate(self, prompt: str, system: str | None = None) -> str: ...

    def stream(self, prompt: str, system: str | None = None) -> AsyncIterator[str]: ...


class ChatTextModel:
    """TextModel backed by a browser-use chat model.

    browser-use chat models return whole completions, so ``stream`` yields a
    single chunk. Vendor failures surface as UpstreamError with the vendor
    message intact.
    """

    def __init__(self, llm: "BaseChatModel", provider: str, model: str):
        self.llm = llm
        self.provider = provider
        self.model = model

    async def generate(self, prompt: str, system: str | None = None) -> str:
        messages = []
        if system:
            messages.append(SystemMessage(content=system))
        messages.append(UserMessage(content=prompt))

        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            raise UpstreamError(str(e), provider=self.provider, status_code=getattr(e, "status_code", None)) from e
        return response.completion

    async def stream(self, prompt: str, system: str | None = None) -> AsyncIterator[str]:
        completion = await self.generate(prompt, system=system)
        if completion:
            yield completion

    def __repr__(self) -> str:
        return f"ChatTextModel({self.provider}:{self.model})"


@dataclass(frozen=True)
class ProviderSpec:
    """How to find credentials for one provider."""

    name: str
    env_vars: tuple[str, ...] = ()
    requires_key: bool = True


@dataclass(frozen=True)
class ProviderRegistry:
    """Provider credentials and defaults resolved once at startup and passed to the factory."""

    settings: AppSettings
    models: dict[str, ProviderSpec] = field(default_factory=dict)
    search: dict[str, ProviderSpec] = field(default_factory=dict)

    def model_api_key(self, provider: str, explicit: str | None = None) -> str | None:
        if explicit:
            return explicit
        if provider not in self.models:
            return None
        return self.settings.llm.get_api_key_for_provider(provider)

    def search_api_key(self, provider: str, explicit: str | None = None) -> str | None:
        if explicit:
            return explicit
        return self.settings.search.get_api_key_for_provider(provider)


def _as_tuple(names: str | list[str] | None) -> tuple[str, ...]:
    if names is None:
        return ()
    return (names,) if isinstance(names, str) else tuple(names)


def build_provider_registry(app_settings: AppSettings) -> ProviderRegistry:
    """Build the provider registry from settings."""
    models = {name: ProviderSpec(name=name, env_vars=_as_tuple(STANDARD_ENV_VAR_NAMES.get(name)), requires_key=name not in NO_KEY_PROVIDERS) for name in PROVIDER_NAMES}
    search = {
        name: ProviderSpec(name=name, env_vars=_as_tuple(SEARCH_ENV_VAR_NAMES.get(name)), requires_key=name not in NO_KEY_SEARCH_PROVIDERS)
        for name in SEARCH_PROVIDER_NAMES
    }
    return ProviderRegistry(settings=app_settings, models=models, search=search)


class ProviderFactory:
    """Builds text models and search providers for a research session.

    Every construction failure is a ConfigurationError raised before any network call.
    """

    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    @property
    def settings(self) -> AppSettings:
        return self.registry.settings

    def create_text_model(self, config: "ModelConfig") -> TextModel:
        llm_settings = self.settings.llm
        if config.provider not in self.registry.models:
            raise ConfigurationError(f"Unsupported provider: {config.provider}")
        llm = get_llm(
            provider=config.provider,
            model=config.model,
            api_key=self.registry.model_api_key(config.provider, config.api_key),
            base_url=config.base_url or (llm_settings.base_url if config.provider == llm_settings.provider else None),
            temperature=config.temperature if config.temperature is not None else llm_settings.temperature,
            reasoning_effort=config.reasoning_effort or llm_settings.reasoning_effort,
            azure_endpoint=llm_settings.azure_endpoint,
            azure_api_version=llm_settings.azure_api_version,
            aws_region=llm_settings.aws_region,
        )
        return ChatTextModel(llm, provider=config.provider, model=config.model)

    def create_search_provider(
        self,
        provider: str,
        api_key: str | None = None,
        task_model: TextModel | None = None,
    ) -> "SearchProvider | None":
        """Build the search backend, or None for the ``model`` pseudo-provider (knowledge-only research)."""
        from .search import create_search_provider

        spec = self.registry.search.get(provider)
        if spec is None:
            raise ConfigurationError(f"Unsupported search provider: {provider}")
        key = self.registry.search_api_key(provider, api_key)
        if spec.requires_key and not key:
            raise ConfigurationError(missing_key_message(provider, "web search", list(spec.env_vars), "MCP_SEARCH_API_KEY"))
        return create_search_provider(provider, api_key=key, search_settings=self.settings.search, task_model=task_model)
