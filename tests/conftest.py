"""Pytest configuration and in-process fakes for mcp-server-deep-research tests."""

import asyncio
import os

import pytest

from mcp_server_deep_research.cache import ResearchCache
from mcp_server_deep_research.concurrency import RequestManager, Semaphore
from mcp_server_deep_research.config import AppSettings
from mcp_server_deep_research.exceptions import UpstreamError
from mcp_server_deep_research.search import ImageSource, SearchResponse, Source

DEFAULT_PLAN = "1. Overview: what the subject is\n2. Market: who else is there"
DEFAULT_REPORT = "# Acme Report\n\n## Overview\n\nAcme makes anvils [1].\n\n## Market\n\nThe anvil market is small."


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: Tests that take longer to run")


def classify_prompt(prompt: str) -> str:
    """Which engine step a prompt belongs to."""
    if "Write a final report" in prompt:
        return "report"
    if "Decide whether the research is complete" in prompt:
        return "review"
    if "generate a list of up to" in prompt:
        return "queries"
    if "Extract the learnings" in prompt or "Answer the following research query" in prompt:
        return "learning"
    return "plan"


class FakeTextModel:
    """Scripted TextModel: answers by recognising which engine step asked."""

    provider = "fake"
    model = "fake-model"

    def __init__(
        self,
        plan: str = DEFAULT_PLAN,
        queries: str = '[{"query": "acme overview", "researchGoal": "basics"}, {"query": "acme rivals", "researchGoal": "competition"}]',
        review: str = "[]",
        report: str = DEFAULT_REPORT,
        fail_learning_for: tuple[str, ...] = (),
        delay: float = 0.0,
        chunk_size: int = 16,
    ):
        self.plan = plan
        self.queries = queries
        self.review = review
        self.report = report
        self.fail_learning_for = fail_learning_for
        self.delay = delay
        self.chunk_size = chunk_size
        self.calls: list[str] = []
        self.prompts: list[str] = []

    async def generate(self, prompt: str, system: str | None = None) -> str:
        kind = classify_prompt(prompt)
        self.calls.append(kind)
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        match kind:
            case "plan":
                return self.plan
            case "queries":
                return self.queries
            case "review":
                return self.review
            case "report":
                return self.report
        for query in self.fail_learning_for:
            if query in prompt:
                raise UpstreamError(f"model refused '{query}'", provider=self.provider)
        return f"Learning: {prompt.splitlines()[2] if len(prompt.splitlines()) > 2 else prompt[:40]}"

    async def stream(self, prompt: str, system: str | None = None):
        text = await self.generate(prompt, system=system)
        for start in range(0, len(text), self.chunk_size):
            yield text[start : start + self.chunk_size]


class FakeSearchProvider:
    """Returns one source and one image per query; can be told to fail or hang on some queries."""

    name = "fake"

    def __init__(self, fail_for: tuple[str, ...] = (), hang_for: tuple[str, ...] = (), delay: float = 0.0):
        self.fail_for = fail_for
        self.hang_for = hang_for
        self.delay = delay
        self.queries: list[str] = []

    async def search(self, query: str, max_results: int = 5) -> SearchResponse:
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if any(part in query for part in self.hang_for):
            await asyncio.Event().wait()
        if any(part in query for part in self.fail_for):
            raise UpstreamError(f"[fake] HTTP 500: search failed for {query}", provider="fake", status_code=500)
        slug = query.replace(" ", "-")
        return SearchResponse(
            query=query,
            sources=[Source(url=f"https://example.com/{slug}", title=f"About {query}", content=f"Facts about {query}.")],
            images=[ImageSource(url=f"https://example.com/{slug}.png", description=query)],
        )


class FakeFactory:
    """ProviderFactory stand-in that hands out the given fakes and records what was asked for."""

    def __init__(self, text_model: FakeTextModel | None = None, search_provider: FakeSearchProvider | None = None):
        self.text_model = text_model or FakeTextModel()
        self.search_provider = search_provider or FakeSearchProvider()
        self.model_configs = []
        self.search_requests = []

    def create_text_model(self, config):
        self.model_configs.append(config)
        return self.text_model

    def create_search_provider(self, provider, api_key=None, task_model=None):
        self.search_requests.append((provider, api_key))
        return self.search_provider


async def no_sleep(delay: float) -> None:
    """Retry sleep that returns immediately."""
    await asyncio.sleep(0)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove API keys and MCP_* variables so settings only see what a test sets."""
    for var in list(os.environ.keys()):
        if "API_KEY" in var or var.startswith("MCP_"):
            monkeypatch.delenv(var, raising=False)


@pytest.fixture
def app_settings(clean_env) -> AppSettings:
    settings = AppSettings()
    settings.research.save_directory = None
    settings.server.results_dir = None
    return settings


@pytest.fixture
def fake_model() -> FakeTextModel:
    return FakeTextModel()


@pytest.fixture
def fake_search() -> FakeSearchProvider:
    return FakeSearchProvider()


@pytest.fixture
def fake_factory(fake_model, fake_search) -> FakeFactory:
    return FakeFactory(fake_model, fake_search)


@pytest.fixture
def cache() -> ResearchCache:
    return ResearchCache(max_entries=50)


@pytest.fixture
def runner(app_settings, fake_factory, cache):
    from mcp_server_deep_research.research.runner import ResearchRunner

    return ResearchRunner(
        app_settings=app_settings,
        factory=fake_factory,
        cache=cache,
        semaphore=Semaphore(5),
        request_manager=RequestManager(),
        sleep_func=no_sleep,
    )
