"""Data models for deep research sessions."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..cache import CacheType
from ..search import ImageSource, SearchResponse, Source
from ..timeouts import SearchDepth

ResearchKind = CacheType

__all__ = [
    "ImageSource",
    "ModelConfig",
    "ResearchKind",
    "ResearchRequest",
    "ResearchResult",
    "ResearchStage",
    "ResearchTask",
    "SearchDepth",
    "SearchResponse",
    "Source",
    "TaskState",
]


class ResearchStage(str, Enum):
    """Engine state machine."""

    PLANNING = "planning"
    SEARCHING = "searching"
    SYNTHESIZING = "synthesizing"
    DECIDING = "deciding"
    REPORTING = "reporting"
    DONE = "done"
    ERRORED = "errored"


class TaskState(str, Enum):
    UNPROCESSED = "unprocessed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ResearchTask:
    """One search query and what was learned from it."""

    query: str
    research_goal: str = ""
    state: TaskState = TaskState.UNPROCESSED
    learning: str = ""
    sources: list[Source] = field(default_factory=list)
    images: list[ImageSource] = field(default_factory=list)
    error: str | None = None
    section: str | None = None
    round: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "researchGoal": self.research_goal,
            "state": self.state.value,
            "learning": self.learning,
            "sources": [s.to_dict() for s in self.sources],
            "images": [i.to_dict() for i in self.images],
            "error": self.error,
            "section": self.section,
            "round": self.round,
        }


@dataclass(frozen=True)
class ModelConfig:
    """Which model to call and how. ``api_key`` None means resolve from the environment."""

    provider: str
    model: str
    api_key: str | None = None
    base_url: str | None = None
    temperature: float | None = None
    reasoning_effort: str | None = None


class ResearchRequest(BaseModel):
    """A research request as received from a tool call, HTTP body or CLI.

    Field names accept both snake_case and camelCase.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    kind: ResearchKind = Field(default=ResearchKind.FREE_FORM)
    query: Optional[str] = Field(default=None, description="Free-form question or market research query")
    search_depth: SearchDepth = Field(default=SearchDepth.MEDIUM)
    language: Optional[str] = None

    # Company research
    company_name: Optional[str] = None
    company_website: Optional[str] = None
    industry: Optional[str] = None
    sub_industries: list[str] = Field(default_factory=list)
    competitors: list[str] = Field(default_factory=list)
    research_sources: list[str] = Field(default_factory=list)
    additional_context: Optional[str] = None

    # Market research
    timeframe: Optional[str] = None

    # Bulk company research
    companies: list[str] = Field(default_factory=list)

    # Models and search
    provider_id: Optional[str] = None
    thinking_model_id: Optional[str] = None
    task_model_id: Optional[str] = None
    thinking_provider_id: Optional[str] = None
    task_provider_id: Optional[str] = None
    api_key: Optional[str] = Field(default=None, repr=False)
    search_provider_id: Optional[str] = None
    search_api_key: Optional[str] = Field(default=None, repr=False)

    use_cache: bool = True

    @field_validator("companies", "competitors", "sub_industries", "research_sources", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def subject(self) -> str:
        """Human-readable subject of the research."""
        if self.kind is ResearchKind.COMPANY:
            return self.company_name or ""
        if self.kind is ResearchKind.BULK_COMPANY:
            return ", ".join(self.companies)
        return self.query or ""

    def cache_params(self, thinking: ModelConfig, task: ModelConfig, search_provider: str) -> dict[str, Any]:
        """Parameters that determine the result, as fed to the cache key. Secrets are excluded."""
        params: dict[str, Any] = {
            "search_depth": self.search_depth.value,
            "language": self.language,
            "provider_id": thinking.provider,
            "thinking_model_id": thinking.model,
            "task_provider_id": task.provider,
            "task_model_id": task.model,
            "search_provider_id": search_provider,
        }
        match self.kind:
            case ResearchKind.COMPANY:
                params.update(
                    company_name=self.company_name,
                    company_website=self.company_website,
                    industry=self.industry,
                    sub_industries=self.sub_industries,
                    competitors=self.competitors,
                    research_sources=self.research_sources,
                    additional_context=self.additional_context,
                )
            case ResearchKind.MARKET:
                params.update(query=self.query, industry=self.industry, timeframe=self.timeframe)
            case ResearchKind.BULK_COMPANY:
                params.update(companies=self.companies)
            case ResearchKind.FREE_FORM:
                params.update(query=self.query)
        return params


@dataclass
class ResearchResult:
    """Final output of a research session."""

    research_id: str
    kind: ResearchKind
    title: str
    report: str
    learnings: list[str] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)
    images: list[ImageSource] = field(default_factory=list)
    tasks: list[ResearchTask] = field(default_factory=list)
    sections: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """Body of the ``complete`` event and of cache entries."""
        return {
            "title": self.title,
            "report": self.report,
            "learnings": self.learnings,
            "sources": [s.to_dict() for s in self.sources],
            "images": [i.to_dict() for i in self.images],
            "tasks": [t.to_dict() for t in self.tasks],
            "sections": self.sections,
            "metadata": {"researchId": self.research_id, "kind": self.kind.value, **self.metadata},
        }
