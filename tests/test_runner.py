"""Tests for the session runner and the session registry."""

import asyncio

import pytest

from conftest import FakeFactory, FakeSearchProvider, FakeTextModel, no_sleep
from mcp_server_deep_research.cache import build_cache_key
from mcp_server_deep_research.concurrency import RequestManager, Semaphore
from mcp_server_deep_research.events import EventStream, EventType
from mcp_server_deep_research.exceptions import CancellationError, ConfigurationError, ResearchTimeoutError, UpstreamError
from mcp_server_deep_research.research import store
from mcp_server_deep_research.research.models import ResearchKind, ResearchRequest, ResearchStage
from mcp_server_deep_research.research.runner import ResearchRunner
from mcp_server_deep_research.research.session import resolve_session_config


def company_request(**overrides) -> ResearchRequest:
    fields = {"kind": ResearchKind.COMPANY, "company_name": "Acme Corp", "search_depth": "fast"}
    fields.update(overrides)
    return ResearchRequest(**fields)


def make_runner(app_settings, factory=None, cache=None) -> ResearchRunner:
    return ResearchRunner(
        app_settings=app_settings,
        factory=factory,
        cache=cache,
        semaphore=Semaphore(5),
        request_manager=RequestManager(),
        sleep_func=no_sleep,
    )


async def run_and_collect(runner: ResearchRunner, request: ResearchRequest, research_id: str | None = None):
    stream = EventStream()
    try:
        payload = await runner.run(request, stream, research_id=research_id)
    finally:
        events = await stream.collect()
    return payload, events


def of_type(events, event_type: EventType) -> list[dict]:
    return [event.data for event in events if event.type is event_type]


class TestRunnerLifecycle:
    """Test event framing of a single session."""

    async def test_fast_company_research(self, runner, fake_search):
        """A fast company run emits info first, one complete, then close."""
        payload, events = await run_and_collect(runner, company_request(), research_id="acme-1")

        assert payload["metadata"]["companyName"] == "Acme Corp"
        assert payload["metadata"]["researchId"] == "acme-1"
        assert payload["metadata"]["kind"] == "company-research"
        assert "durationSeconds" in payload["metadata"]
        assert len(fake_search.queries) == 3

        assert events[0].type is EventType.INFO
        assert events[0].data["researchId"] == "acme-1"
        assert events[-1].type is EventType.CLOSE
        assert events[-2].type is EventType.COMPLETE
        assert len(of_type(events, EventType.COMPLETE)) == 1
        assert of_type(events, EventType.ERROR) == []

    async def test_model_configs_come_from_settings(self, runner, fake_factory):
        """Request fields override the configured models."""
        await run_and_collect(runner, company_request(thinking_model_id="gpt-4.1", api_key="sk-request"))
        thinking = fake_factory.model_configs[0]
        assert thinking.provider == "openai"
        assert thinking.model == "gpt-4.1"
        assert thinking.api_key == "sk-request"
        assert fake_factory.search_requests == [("tavily", None)]

    async def test_partial_task_failure_still_completes(self, app_settings, cache):
        """One failing search task is reported but the report is written."""
        factory = FakeFactory(FakeTextModel(), FakeSearchProvider(fail_for=("latest news",)))
        payload, events = await run_and_collect(make_runner(app_settings, factory, cache), company_request())

        assert payload["metadata"]["failedTaskCount"] == 1
        failed = [data for data in of_type(events, EventType.PROGRESS) if data.get("status") == "failed"]
        assert [data["name"] for data in failed] == ["Acme Corp latest news"]
        assert len(of_type(events, EventType.COMPLETE)) == 1


class TestRunnerErrors:
    """Test terminal error events."""

    async def test_missing_api_key(self, app_settings, cache):
        """Without an OpenAI key the session fails before any network call."""
        stream = EventStream()
        with pytest.raises(ConfigurationError):
            await make_runner(app_settings, cache=cache).run(company_request(), stream)
        events = await stream.collect()
        errors = of_type(events, EventType.ERROR)
        assert len(errors) == 1
        assert errors[0]["message"].startswith("No OpenAI API key found for gpt-4o")
        assert errors[0]["errorType"] == "configuration"
        assert of_type(events, EventType.COMPLETE) == []
        assert events[-1].type is EventType.CLOSE

    async def test_all_tasks_failing(self, app_settings, cache):
        """With every search failing the error carries the stage and partial plan."""
        factory = FakeFactory(FakeTextModel(), FakeSearchProvider(fail_for=("Acme",)))
        stream = EventStream()
        with pytest.raises(UpstreamError, match="All 3 search tasks failed"):
            await make_runner(app_settings, factory, cache).run(company_request(), stream)

        error = of_type(await stream.collect(), EventType.ERROR)[0]
        assert error["errorType"] == "upstream"
        assert error["stage"] == ResearchStage.SYNTHESIZING.value
        assert error["partial"]["plan"]
        assert len(error["partial"]["tasks"]) == 3

    async def test_session_timeout(self, app_settings, cache):
        """Exceeding the depth budget fails with a timeout that names the budget."""
        app_settings.research.fast_timeout = 0.2
        factory = FakeFactory(FakeTextModel(), FakeSearchProvider(hang_for=("Acme",)))
        stream = EventStream()
        with pytest.raises(ResearchTimeoutError, match="fast time budget of 0.2s"):
            await make_runner(app_settings, factory, cache).run(company_request(), stream)

        error = of_type(await stream.collect(), EventType.ERROR)[0]
        assert error["errorType"] == "timeout"
        assert error["stage"] == ResearchStage.SEARCHING.value

    async def test_unknown_subject(self, runner):
        """A company request without a name is a configuration error."""
        with pytest.raises(ConfigurationError, match="company name"):
            await run_and_collect(runner, ResearchRequest(kind=ResearchKind.COMPANY, search_depth="fast"))


class TestRunnerCache:
    """Test result caching."""

    async def test_second_identical_run_hits_cache(self, runner, fake_model, cache):
        """An identical request is served from the cache without model calls."""
        await run_and_collect(runner, company_request())
        calls = len(fake_model.calls)

        payload, events = await run_and_collect(runner, company_request(company_name="  acme CORP "))
        assert payload["metadata"]["cached"] is True
        assert payload["metadata"]["cacheKey"].startswith("company:")
        assert len(fake_model.calls) == calls
        assert {"step": "cache", "status": "hit", "key": payload["metadata"]["cacheKey"]} in of_type(events, EventType.PROGRESS)
        assert cache.stats.total_hits == 1

    async def test_use_cache_false_skips_cache(self, runner, cache):
        """Opting out neither reads nor writes the cache."""
        await run_and_collect(runner, company_request(use_cache=False))
        assert len(cache) == 0

    async def test_realtime_query_is_not_cached(self, runner, cache):
        """Questions about the present always run fresh."""
        await run_and_collect(runner, ResearchRequest(query="latest AI news this week", search_depth="fast"))
        assert len(cache) == 0


class TestBulkResearch:
    """Test bulk company research."""

    def bulk_request(self, companies):
        return ResearchRequest(kind=ResearchKind.BULK_COMPANY, companies=companies)

    async def test_one_failing_company_does_not_fail_the_batch(self, app_settings, cache):
        """Per-company outcomes are reported and the batch completes."""
        factory = FakeFactory(FakeTextModel(), FakeSearchProvider(fail_for=("Globex",)))
        payload, events = await run_and_collect(make_runner(app_settings, factory, cache), self.bulk_request(["Acme", "Globex", "acme"]))

        assert payload["metadata"]["companies"] == ["Acme", "Globex"]
        assert payload["metadata"]["completedCount"] == 1
        assert payload["metadata"]["failedCount"] == 1
        assert payload["title"] == "Bulk company research (1/2 companies)"
        assert [r["status"] for r in payload["results"]] == ["completed", "failed"]

        assert [data["company"] for data in of_type(events, EventType.COMPANY_START)] == ["Acme", "Globex"]
        assert [data["company"] for data in of_type(events, EventType.COMPANY_COMPLETE)] == ["Acme"]
        assert [data["company"] for data in of_type(events, EventType.COMPANY_ERROR)] == ["Globex"]
        assert all("company" in data for data in of_type(events, EventType.COMPANY_PROGRESS))
        assert len(of_type(events, EventType.COMPLETE)) == 1

    async def test_hanging_company_releases_permits(self, app_settings, cache):
        """A company that times out gives its permits back before the next company starts."""
        app_settings.research.bulk_batch_size = 1
        app_settings.research.bulk_item_timeout = 0.5
        factory = FakeFactory(FakeTextModel(), FakeSearchProvider(hang_for=("Hang",)))
        manager = RequestManager()
        runner = ResearchRunner(
            app_settings=app_settings,
            factory=factory,
            cache=cache,
            semaphore=Semaphore(3),
            request_manager=manager,
            sleep_func=no_sleep,
        )

        payload, events = await run_and_collect(runner, self.bulk_request(["Hang Inc", "Acme"]), research_id="bulk1")

        assert [r["status"] for r in payload["results"]] == ["failed", "completed"]
        assert "timed out" in payload["results"][0]["error"]
        assert [data["company"] for data in of_type(events, EventType.COMPANY_COMPLETE)] == ["Acme"]

    async def test_company_abort_is_scoped_to_that_company(self, app_settings, cache):
        """Cancelling company 1 leaves company 10's requests alone."""
        runner = make_runner(app_settings, FakeFactory(), cache)
        manager = runner.request_manager
        first = runner._build_machine(
            resolve_session_config(company_request(), app_settings), "rid-1", FakeTextModel(), FakeTextModel(), FakeSearchProvider(), lambda *_: None
        )

        async def slow():
            await asyncio.sleep(10)

        other = asyncio.create_task(manager.deduplicate_request("rid-10:search", None, slow))
        await asyncio.sleep(0)
        assert await first.cancel() == 0
        assert manager.get_pending_count() == 1
        manager.abort_requests()
        with pytest.raises(CancellationError):
            await other

    async def test_all_companies_failing(self, app_settings, cache):
        """If every company fails the session fails."""
        factory = FakeFactory(FakeTextModel(), FakeSearchProvider(fail_for=("Acme", "Globex")))
        stream = EventStream()
        with pytest.raises(UpstreamError, match="Research failed for all 2 companies"):
            await make_runner(app_settings, factory, cache).run(self.bulk_request(["Acme", "Globex"]), stream)
        assert len(of_type(await stream.collect(), EventType.ERROR)) == 1

    async def test_empty_company_list(self, runner):
        """A bulk request needs companies."""
        with pytest.raises(ConfigurationError):
            await run_and_collect(runner, self.bulk_request(["  "]))


class TestSessionConfig:
    """Test request defaults resolved once per session."""

    def test_request_key_only_goes_to_its_provider(self, app_settings):
        """A key sent for OpenAI is not handed to an Anthropic task model."""
        session = resolve_session_config(company_request(provider_id="openai", task_provider_id="anthropic", api_key="sk-openai"), app_settings)
        assert session.thinking.api_key == "sk-openai"
        assert session.task.provider == "anthropic"
        assert session.task.api_key is None

    def test_request_key_applies_to_both_models_of_one_provider(self, app_settings):
        """Without per-model providers both models use the request key."""
        session = resolve_session_config(company_request(api_key="sk-openai"), app_settings)
        assert session.thinking.api_key == session.task.api_key == "sk-openai"

    def test_task_model_is_part_of_the_cache_key(self, app_settings):
        """Requests that differ only in their task model are cached apart."""
        mini = resolve_session_config(company_request(task_model_id="gpt-4o-mini"), app_settings)
        nano = resolve_session_config(company_request(task_model_id="gpt-4.1-nano"), app_settings)
        assert mini.cache_params()["task_model_id"] == "gpt-4o-mini"
        assert build_cache_key(mini.kind, mini.cache_params()) != build_cache_key(nano.kind, nano.cache_params())

    def test_task_provider_is_part_of_the_cache_key(self, app_settings):
        """Switching the task provider changes the key."""
        same = resolve_session_config(company_request(), app_settings)
        other = resolve_session_config(company_request(task_provider_id="groq"), app_settings)
        assert build_cache_key(same.kind, same.cache_params()) != build_cache_key(other.kind, other.cache_params())


class TestSessionStore:
    """Test the background session registry."""

    async def test_session_completes(self, runner):
        """A started session stores its result."""
        session = store.create_session(company_request())
        try:
            task = store.start_session(session, runner)
            result = await task
            assert session.state is store.SessionState.COMPLETED
            assert result["metadata"]["researchId"] == session.id
            assert session.to_summary()["subject"] == "Acme Corp"
            assert session in store.list_sessions()
            with pytest.raises(ValueError):
                store.start_session(session, runner)
        finally:
            store.delete_session(session.id)
        assert store.get_session(session.id) is None

    async def test_failed_session_records_error(self, app_settings, cache):
        """Engine errors end the session as failed without raising."""
        session = store.create_session(company_request())
        try:
            assert await store.start_session(session, make_runner(app_settings, cache=cache)) is None
            assert session.state is store.SessionState.FAILED
            assert "No OpenAI API key" in session.error
        finally:
            store.delete_session(session.id)

    async def test_cancel_session(self, app_settings, cache):
        """Cancelling aborts in-flight calls and emits a cancellation error."""
        factory = FakeFactory(FakeTextModel(), FakeSearchProvider(hang_for=("Acme",)))
        session = store.create_session(company_request())
        try:
            task = store.start_session(session, make_runner(app_settings, factory, cache))
            for _ in range(50):
                await asyncio.sleep(0.01)
                if len(factory.search_provider.queries) == 3:
                    break
            assert await store.cancel_session(session.id)
            await asyncio.wait([task])

            assert session.state is store.SessionState.CANCELLED
            events = await session.stream.collect()
            errors = of_type(events, EventType.ERROR)
            assert len(errors) == 1
            assert errors[0]["errorType"] == "cancellation"
            assert events[-1].type is EventType.CLOSE
        finally:
            store.delete_session(session.id)

    async def test_cancel_unknown_session(self):
        """Unknown ids are reported as not found."""
        assert await store.cancel_session("nope") is False
