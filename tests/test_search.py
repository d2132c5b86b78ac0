"""Tests for search backends: HTTP APIs via httpx.MockTransport and the browser agent."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from mcp_server_deep_research.exceptions import ConfigurationError, ResearchTimeoutError, UpstreamError
from mcp_server_deep_research.search import (
    BochaSearchProvider,
    BrowserSearchProvider,
    ExaSearchProvider,
    FirecrawlSearchProvider,
    SearxngSearchProvider,
    TavilySearchProvider,
    create_search_provider,
)


def mock_transport(payload=None, status_code: int = 200, text: str | None = None, seen: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if text is not None:
            return httpx.Response(status_code, text=text)
        return httpx.Response(status_code, json=payload)

    return httpx.MockTransport(handler)


class TestTavily:
    """Test the Tavily backend."""

    async def test_maps_results_and_images(self):
        """Results become sources and images keep their descriptions."""
        seen: list[httpx.Request] = []
        payload = {
            "results": [
                {"url": "https://a.example", "title": "A", "content": "alpha"},
                {"title": "no url"},
            ],
            "images": [{"url": "https://img.example/1.png", "description": "chart"}, "https://img.example/2.png"],
        }
        provider = TavilySearchProvider(api_key="tvly-key", transport=mock_transport(payload, seen=seen))
        response = await provider.search("acme", max_results=3)

        assert [s.url for s in response.sources] == ["https://a.example"]
        assert response.sources[0].content == "alpha"
        assert [i.url for i in response.images] == ["https://img.example/1.png", "https://img.example/2.png"]
        assert response.images[0].description == "chart"

        request = seen[0]
        assert request.url == "https://api.tavily.com/search"
        assert request.headers["Authorization"] == "Bearer tvly-key"
        assert json.loads(request.content)["max_results"] == 3

    async def test_http_error_is_upstream_error_with_truncated_body(self):
        """Error bodies are cut to 200 characters."""
        provider = TavilySearchProvider(api_key="k", transport=mock_transport(status_code=401, text="x" * 500))
        with pytest.raises(UpstreamError) as excinfo:
            await provider.search("acme")
        assert excinfo.value.status_code == 401
        assert excinfo.value.message == f"[tavily] HTTP 401: {'x' * 200}"

    async def test_invalid_json_is_upstream_error(self):
        """Non-JSON bodies are rejected."""
        provider = TavilySearchProvider(api_key="k", transport=mock_transport(text="<html>oops</html>"))
        with pytest.raises(UpstreamError, match="Invalid JSON"):
            await provider.search("acme")

    async def test_timeout_is_research_timeout(self):
        """Transport timeouts become ResearchTimeoutError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        provider = TavilySearchProvider(api_key="k", timeout=5, transport=httpx.MockTransport(handler))
        with pytest.raises(ResearchTimeoutError, match=r"\[tavily\]"):
            await provider.search("acme")

    async def test_connection_error_is_upstream_error(self):
        """Network failures are upstream errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        provider = TavilySearchProvider(api_key="k", transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamError, match="refused"):
            await provider.search("acme")


class TestOtherBackends:
    """Test response mapping of the remaining HTTP backends."""

    async def test_firecrawl(self):
        """Firecrawl markdown becomes source content."""
        payload = {"data": [{"url": "https://f.example", "title": "F", "markdown": "# md"}]}
        response = await FirecrawlSearchProvider(api_key="k", transport=mock_transport(payload)).search("q")
        assert response.sources[0].content == "# md"

    async def test_exa_uses_api_key_header(self):
        """Exa authenticates with x-api-key and maps result images."""
        seen: list[httpx.Request] = []
        payload = {"results": [{"url": "https://e.example", "title": "E", "summary": "sum", "image": "https://e.example/i.png"}]}
        response = await ExaSearchProvider(api_key="exa-key", transport=mock_transport(payload, seen=seen)).search("q")
        assert seen[0].headers["x-api-key"] == "exa-key"
        assert response.sources[0].content == "sum"
        assert response.images[0].url == "https://e.example/i.png"

    async def test_bocha(self):
        """Bocha web pages and images are mapped."""
        payload = {
            "data": {
                "webPages": {"value": [{"url": "https://b.example", "name": "B", "summary": "bs"}]},
                "images": {"value": [{"contentUrl": "https://b.example/i.png", "name": "pic"}]},
            }
        }
        response = await BochaSearchProvider(api_key="k", transport=mock_transport(payload)).search("q")
        assert response.sources[0].title == "B"
        assert response.images[0].description == "pic"

    async def test_searxng_filters_low_scores(self):
        """SearXNG results under the score threshold are dropped."""
        seen: list[httpx.Request] = []
        payload = {
            "results": [
                {"url": "https://good.example", "title": "good", "content": "c", "score": 0.9},
                {"url": "https://bad.example", "title": "bad", "content": "c", "score": 0.1},
                {"url": "https://img.example", "img_src": "https://img.example/i.png", "category": "images"},
            ]
        }
        provider = SearxngSearchProvider(base_url="http://searx.local/", transport=mock_transport(payload, seen=seen))
        response = await provider.search("q")
        assert [s.url for s in response.sources] == ["https://good.example"]
        assert [i.url for i in response.images] == ["https://img.example/i.png"]
        assert seen[0].url.params["format"] == "json"
        assert str(seen[0].url).startswith("http://searx.local/search")


class TestCreateSearchProvider:
    """Test the backend factory."""

    def test_model_provider_means_no_web_search(self):
        """The model pseudo-provider has no backend."""
        assert create_search_provider("model") is None

    def test_http_provider(self):
        """Known HTTP backends are constructed with their key."""
        provider = create_search_provider("exa", api_key="k")
        assert isinstance(provider, ExaSearchProvider)
        assert provider.api_key == "k"

    def test_unknown_provider(self):
        """Unknown names are configuration errors."""
        with pytest.raises(ConfigurationError, match="Unsupported search provider"):
            create_search_provider("altavista")

    def test_browser_needs_chat_model(self):
        """The browser backend needs a browser-use model to drive the agent."""
        with pytest.raises(ConfigurationError, match="browser-use chat model"):
            create_search_provider("browser", task_model=None)


class TestBrowserSearch:
    """Test the browser-agent backend."""

    async def test_agent_history_becomes_sources(self):
        """Visited pages become sources and the agent's summary is the answer."""
        history = MagicMock()
        history.final_result.return_value = "Acme makes anvils. DONE"
        history.urls.return_value = ["https://acme.example", None, "https://acme.example", "about:blank", "https://news.example"]
        agent = MagicMock()
        agent.run = AsyncMock(return_value=history)

        with patch("browser_use.Agent", return_value=agent) as agent_class, patch("browser_use.BrowserProfile"):
            response = await BrowserSearchProvider(llm=MagicMock(), max_steps=5).search("acme", max_results=3)

        assert [s.url for s in response.sources] == ["https://acme.example", "https://news.example"]
        assert response.answer == "Acme makes anvils. DONE"
        assert agent_class.call_args.kwargs["max_steps"] == 5
        assert "acme" in agent_class.call_args.kwargs["task"]

    async def test_agent_failure_is_upstream_error(self):
        """Agent errors are wrapped with the backend prefix."""
        agent = MagicMock()
        agent.run = AsyncMock(side_effect=RuntimeError("browser crashed"))
        with patch("browser_use.Agent", return_value=agent), patch("browser_use.BrowserProfile"):
            with pytest.raises(UpstreamError, match=r"\[browser\] browser crashed"):
                await BrowserSearchProvider(llm=MagicMock()).search("acme")

    def test_factory_uses_task_model_llm(self):
        """The browser backend drives the agent with the task model's chat model."""
        llm = MagicMock()
        provider = create_search_provider("browser", task_model=SimpleNamespace(llm=llm))
        assert isinstance(provider, BrowserSearchProvider)
        assert provider.llm is llm
