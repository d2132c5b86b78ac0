"""Resolve a research request against environment defaults, once, before a session starts."""

from dataclasses import dataclass

from ..config import AppSettings
from ..timeouts import DepthPolicy, ModelTimeouts, SearchDepth, get_depth_policy, get_timeout_config
from .models import ModelConfig, ResearchKind, ResearchRequest


@dataclass(frozen=True)
class SessionConfig:
    """Everything a session needs, with every default already applied."""

    request: ResearchRequest
    thinking: ModelConfig
    task: ModelConfig
    search_provider: str
    search_api_key: str | None
    policy: DepthPolicy
    thinking_timeouts: ModelTimeouts
    task_timeouts: ModelTimeouts
    language: str | None
    enable_references: bool
    enable_citation_image: bool

    @property
    def kind(self) -> ResearchKind:
        return self.request.kind

    def cache_params(self) -> dict:
        return self.request.cache_params(self.thinking, self.task, self.search_provider)


def _session_timeout(app_settings: AppSettings, kind: ResearchKind, depth: SearchDepth) -> float:
    research = app_settings.research
    if kind is ResearchKind.BULK_COMPANY:
        return research.bulk_total_timeout
    return {
        SearchDepth.FAST: research.fast_timeout,
        SearchDepth.MEDIUM: research.medium_timeout,
        SearchDepth.DEEP: research.deep_timeout,
    }[depth]


def resolve_session_config(request: ResearchRequest, app_settings: AppSettings) -> SessionConfig:
    """Apply defaults: request value, then configured value.

    Bulk company research always runs each company at fast depth.
    """
    llm = app_settings.llm
    depth = SearchDepth.FAST if request.kind is ResearchKind.BULK_COMPANY else request.search_depth

    provider = request.provider_id or llm.provider
    thinking_provider = request.thinking_provider_id or provider
    task_provider = request.task_provider_id or provider
    # A request key belongs to the request's provider only
    thinking_key = request.api_key if thinking_provider == provider else None
    task_key = request.api_key if task_provider == provider else None
    thinking = ModelConfig(
        provider=thinking_provider,
        model=request.thinking_model_id or llm.thinking_model,
        api_key=thinking_key,
        temperature=llm.temperature,
        reasoning_effort=llm.reasoning_effort,
    )
    task = ModelConfig(
        provider=task_provider,
        model=request.task_model_id or llm.task_model,
        api_key=task_key,
        temperature=llm.temperature,
        reasoning_effort=llm.reasoning_effort,
    )

    policy = get_depth_policy(depth, session_timeout=_session_timeout(app_settings, request.kind, depth))
    return SessionConfig(
        request=request,
        thinking=thinking,
        task=task,
        search_provider=request.search_provider_id or app_settings.search.provider,
        search_api_key=request.search_api_key,
        policy=policy,
        thinking_timeouts=get_timeout_config(thinking.model, thinking.provider),
        task_timeouts=get_timeout_config(task.model, task.provider),
        language=request.language or app_settings.research.language,
        enable_references=app_settings.research.enable_references,
        enable_citation_image=app_settings.research.enable_citation_image,
    )
