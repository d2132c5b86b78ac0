"""Web search backends used by research tasks."""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from .exceptions import ConfigurationError, ResearchTimeoutError, UpstreamError

if TYPE_CHECKING:
    from browser_use import BrowserProfile

    from .config import SearchSettings
    from .providers import TextModel

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_TIMEOUT = 30.0
MIN_SEARXNG_SCORE = 0.5


@dataclass(frozen=True)
class Source:
    """A web page consulted by a research task."""

    url: str
    title: str | None = None
    content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "title": self.title, "content": self.content}


@dataclass(frozen=True)
class ImageSource:
    url: str
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "description": self.description}


@dataclass
class SearchResponse:
    """Normalized results of one search call."""

    query: str
    sources: list[Source] = field(default_factory=list)
    images: list[ImageSource] = field(default_factory=list)
    answer: str | None = None


@runtime_checkable
class SearchProvider(Protocol):
    name: str

    async def search(self, query: str, max_results: int = 5) -> SearchResponse: ...


class HttpSearchProvider:
    """Shared request handling for HTTP search APIs.

    Every failure is raised as UpstreamError prefixed with ``[provider]`` and a
    truncated response body; timeouts become ResearchTimeoutError.
    """

    name = "http"
    base_url = ""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = DEFAULT_SEARCH_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        if base_url:
            self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise ResearchTimeoutError(f"[{self.name}] Search request timed out after {self.timeout:g}s") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"[{self.name}] {e}", provider=self.name) from e

        if response.status_code >= 400:
            raise UpstreamError(
                f"[{self.name}] HTTP {response.status_code}: {response.text[:200]}",
                provider=self.name,
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"[{self.name}] Invalid JSON response: {response.text[:200]}", provider=self.name) from e


class TavilySearchProvider(HttpSearchProvider):
    name = "tavily"
    base_url = "https://api.tavily.com"

    async def search(self, query: str, max_results: int = 5) -> SearchResponse:
        data = await self._request(
            "POST",
            "/search",
            json={
                "query": query,
                "search_depth": "advanced",
                "topic": "general",
                "max_results": max_results,
                "include_images": True,
                "include_image_descriptions": True,
                "include_answer": False,
                "include_raw_content": False,
            },
        )
        sources = [Source(url=r["url"], title=r.get("title"), content=r.get("raw_content") or r.get("content")) for r in data.get("results", []) if r.get("url")]
        images = []
        for image in data.get("images") or []:
            if isinstance(image, str):
                images.append(ImageSource(url=image))
            elif image.get("url"):
                images.append(ImageSource(url=image["url"], description=image.get("description")))
        return SearchResponse(query=query, sources=sources, images=images, answer=data.get("answer"))


class FirecrawlSearchProvider(HttpSearchProvider):
    name = "firecrawl"
    base_url = "https://api.firecrawl.dev"

    async def search(self, query: str, max_results: int = 5) -> SearchResponse:
        data = await self._request(
            "POST",
            "/v1/search",
            json={
                "query": query,
                "limit": max_results,
                "timeout": int(self.timeout * 1000),
                "scrapeOptions": {"formats": ["markdown"]},
            },
        )
        sources = [
            Source(url=r["url"], title=r.get("title"), content=r.get("markdown") or r.get("description"))
            for r in data.get("data", [])
            if r.get("url")
        ]
        return SearchResponse(query=query, sources=sources)


class ExaSearchProvider(HttpSearchProvider):
    name = "exa"
    base_url = "https://api.exa.ai"

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-api-key": self.api_key or ""}

    async def search(self, query: str, max_results: int = 5) -> SearchResponse:
        data = await self._request(
            "POST",
            "/search",
            json={
                "query": query,
                "type": "auto",
                "numResults": max_results,
                "contents": {"text": True, "summary": {"query": query}},
            },
        )
        sources: list[Source] = []
        images: list[ImageSource] = []
        for r in data.get("results", []):
            if not r.get("url"):
                continue
            sources.append(Source(url=r["url"], title=r.get("title"), content=r.get("summary") or r.get("text")))
            if r.get("image"):
                images.append(ImageSource(url=r["image"], description=r.get("title")))
        return SearchResponse(query=query, sources=sources, images=images)


class BochaSearchProvider(HttpSearchProvider):
    name = "bocha"
    base_url = "https://api.bochaai.com"

    async def search(self, query: str, max_results: int = 5) -> SearchResponse:
        data = await self._request(
            "POST",
            "/v1/web-search",
            json={"query": query, "freshness": "noLimit", "summary": True, "count": max_results},
        )
        payload = data.get("data") or {}
        pages = (payload.get("webPages") or {}).get("value") or []
        sources = [Source(url=p["url"], title=p.get("name"), content=p.get("summary") or p.get("snippet")) for p in pages if p.get("url")]
        images = [
            ImageSource(url=i["contentUrl"], description=i.get("name"))
            for i in (payload.get("images") or {}).get("value") or []
            if i.get("contentUrl")
        ]
        return SearchResponse(query=query, sources=sources, images=images)


class SearxngSearchProvider(HttpSearchProvider):
    """Self-hosted SearXNG. Needs no key; low-scoring results are discarded."""

    name = "searxng"
    base_url = "http://localhost:8080"

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    async def search(self, query: str, max_results: int = 5) -> SearchResponse:
        data = await self._request(
            "GET",
            "/search",
            params={"q": query, "format": "json", "categories": "general,images"},
        )
        sources: list[Source] = []
        images: list[ImageSource] = []
        for r in data.get("results", []):
            if not r.get("url"):
                continue
            if r.get("category") == "images" and r.get("img_src"):
                images.append(ImageSource(url=r["img_src"], description=r.get("title")))
            elif r.get("score", 0) >= MIN_SEARXNG_SCORE:
                sources.append(Source(url=r["url"], title=r.get("title"), content=r.get("content")))
        return SearchResponse(query=query, sources=sources[:max_results], images=images[:max_results])


class BrowserSearchProvider:
    """Searches by driving a real browser with a browser-use agent."""

    name = "browser"

    def __init__(self, llm: Any, browser_profile: "BrowserProfile | None" = None, max_steps: int = 15):
        self.llm = llm
        self.browser_profile = browser_profile
        self.max_steps = max_steps

    async def search(self, query: str, max_results: int = 5) -> SearchResponse:
        from browser_use import Agent, BrowserProfile

        search_prompt = f"""Research task: {query}

Instructions:
1. Search the web for information about this topic
2. Find and read up to {max_results} relevant pages
3. Extract key information and facts
4. Note the source URLs and titles

Provide a concise summary of what you found, including:
- Key facts and information
- Source title and URL for the most relevant source

End your response with: DONE"""

        try:
            agent = Agent(
                task=search_prompt,
                llm=self.llm,
                browser_profile=self.browser_profile or BrowserProfile(headless=True),
                max_steps=self.max_steps,
            )
            result = await agent.run()
        except Exception as e:
            raise UpstreamError(f"[browser] {e}", provider=self.name) from e

        final_result = result.final_result() or ""
        sources: list[Source] = []
        seen: set[str] = set()
        for url in result.urls():
            if url and url.startswith("http") and url not in seen:
                seen.add(url)
                sources.append(Source(url=url, content=final_result[:500]))
        return SearchResponse(query=query, sources=sources[:max_results], answer=final_result)


HTTP_PROVIDERS: dict[str, type[HttpSearchProvider]] = {
    "tavily": TavilySearchProvider,
    "firecrawl": FirecrawlSearchProvider,
    "exa": ExaSearchProvider,
    "bocha": BochaSearchProvider,
    "searxng": SearxngSearchProvider,
}


def create_search_provider(
    provider: str,
    api_key: str | None = None,
    search_settings: "SearchSettings | None" = None,
    task_model: "TextModel | None" = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SearchProvider | None:
    """Create a search backend by name. Returns None for ``model`` (no web search).

    Raises:
        ConfigurationError: For unknown providers or missing prerequisites.
    """
    timeout = search_settings.timeout if search_settings else DEFAULT_SEARCH_TIMEOUT
    base_url = search_settings.base_url if search_settings and search_settings.provider == provider else None

    if provider == "model":
        return None
    if provider == "browser":
        llm = getattr(task_model, "llm", None)
        if llm is None:
            raise ConfigurationError("The browser search provider needs a browser-use chat model as its task model")
        return BrowserSearchProvider(llm=llm)
    if provider not in HTTP_PROVIDERS:
        raise ConfigurationError(f"Unsupported search provider: {provider}")
    return HTTP_PROVIDERS[provider](api_key=api_key, base_url=base_url, timeout=timeout, transport=transport)
