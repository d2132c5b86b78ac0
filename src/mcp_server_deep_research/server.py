"""MCP server exposing the deep research engine as tools, plus an SSE route for streaming clients."""

import asyncio
import json
import logging
import os
import sys
import time
from contextlib import asynccontextmanager, suppress
from typing import Any


def _configure_stdio_logging() -> None:
    """Configure logging for stdio MCP mode - all logs MUST go to stderr.

    In stdio mode, stdout is reserved exclusively for JSON-RPC messages.
    Any logging or print() to stdout corrupts the protocol stream.
    """
    # Suppress noisy loggers from dependencies BEFORE they're imported
    os.environ.setdefault("BROWSER_USE_LOGGING_LEVEL", "warning")

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    root = logging.getLogger()
    root.handlers = [stderr_handler]
    root.setLevel(logging.WARNING)

    for logger_name in [
        "httpx",
        "httpcore",
        "asyncio",
        "aiosqlite",
        "browser_use",
        "openai",
        "anthropic",
    ]:
        dep_logger = logging.getLogger(logger_name)
        dep_logger.setLevel(logging.WARNING)
        dep_logger.handlers = [stderr_handler]
        dep_logger.propagate = False


# Configure logging BEFORE importing browser_use and other noisy dependencies
_configure_stdio_logging()

# ruff: noqa: E402 - Intentional late imports after logging configuration
import psutil
from fastmcp import FastMCP
from fastmcp.dependencies import CurrentContext, Progress
from fastmcp.server.context import Context
from fastmcp.server.tasks.config import TaskConfig
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from .cache import CacheType
from .config import APP_NAME, settings
from .events import SSE_HEADERS, Event, EventType
from .observability import setup_structured_logging
from .research.models import ResearchKind, ResearchRequest, SearchDepth
from .research.runner import ResearchRunner
from .research.store import SessionState, cancel_session, create_session, list_sessions, start_session

logger = logging.getLogger("mcp_server_deep_research")
logger.setLevel(getattr(logging, settings.server.logging_level.upper()))


def serve(runner: ResearchRunner | None = None) -> FastMCP:
    """Create and configure the MCP server.

    Args:
        runner: Runner to execute sessions with. Built from settings on first use when omitted.
    """
    setup_structured_logging()

    _runner: list[ResearchRunner] = [runner] if runner else []

    def get_runner() -> ResearchRunner:
        if not _runner:
            _runner.append(ResearchRunner())
        return _runner[0]

    @asynccontextmanager
    async def lifespan(app: FastMCP):
        cache = get_runner().cache
        cleanup_task = None
        if cache is not None:
            loaded = await cache.load()
            if loaded:
                logger.info(f"Loaded {loaded} cached research results")
            cleanup_task = asyncio.create_task(cache.run_cleanup_loop(settings.cache.cleanup_interval))
        try:
            yield {}
        finally:
            if cleanup_task is not None:
                cleanup_task.cancel()
                with suppress(asyncio.CancelledError):
                    await cleanup_task

    server = FastMCP(APP_NAME, lifespan=lifespan)

    async def execute(request: ResearchRequest, ctx: Context, progress: Progress) -> str:
        """Run a session to its end, relaying its events as MCP progress, and return the report."""
        session = create_session(request, keepalive_interval=settings.research.keepalive_interval)
        task = start_session(session, get_runner())
        await ctx.info(f"Research {session.id} started: {request.subject[:80]}")
        logger.info(f"Starting {request.kind.value} research {session.id}: {request.subject[:100]}")

        relay = _ProgressRelay(ctx, progress)
        try:
            async for event in session.stream:
                await relay.handle(event)
        except asyncio.CancelledError:
            await cancel_session(session.id)
            raise
        await asyncio.wait([task])

        if session.result is None:
            return f"Error: {session.error or 'Research was cancelled'}"
        metadata = session.result.get("metadata", {})
        if metadata.get("cached"):
            await ctx.info("Served from cache")
        return session.result["report"]

    @server.tool(task=TaskConfig(mode="optional"))
    async def run_deep_research(
        query: str,
        search_depth: SearchDepth = SearchDepth.MEDIUM,
        language: str | None = None,
        provider: str | None = None,
        thinking_model: str | None = None,
        task_model: str | None = None,
        search_provider: str | None = None,
        use_cache: bool = True,
        ctx: Context = CurrentContext(),
        progress: Progress = Progress(),
    ) -> str:
        """
        Research a free-form question on the web and write a cited report.

        Runs as a background task if client requests it, otherwise synchronous.

        Args:
            query: The research topic or question
            search_depth: fast, medium or deep
            language: Language the report should be written in
            provider: LLM provider (default from settings)
            thinking_model: Model used to plan and write the report
            task_model: Model used to summarize each search
            search_provider: tavily, firecrawl, exa, bocha, searxng, browser or model
            use_cache: Serve and store results in the result cache

        Returns:
            The research report as markdown
        """
        request = ResearchRequest(
            kind=ResearchKind.FREE_FORM,
            query=query,
            search_depth=search_depth,
            language=language,
            provider_id=provider,
            thinking_model_id=thinking_model,
            task_model_id=task_model,
            search_provider_id=search_provider,
            use_cache=use_cache,
        )
        return await execute(request, ctx, progress)

    @server.tool(task=TaskConfig(mode="optional"))
    async def run_company_research(
        company_name: str,
        company_website: str | None = None,
        industry: str | None = None,
        competitors: list[str] | None = None,
        additional_context: str | None = None,
        search_depth: SearchDepth = SearchDepth.FAST,
        language: str | None = None,
        provider: str | None = None,
        search_provider: str | None = None,
        use_cache: bool = True,
        ctx: Context = CurrentContext(),
        progress: Progress = Progress(),
    ) -> str:
        """
        Write an investment research report on one company.

        Args:
            company_name: Company to research
            company_website: Company website, used for first-party queries
            industry: Industry the company operates in
            competitors: Known competitors
            additional_context: Anything else the analyst should know
            search_depth: fast (3 queries), medium or deep
            language: Language the report should be written in
            provider: LLM provider (default from settings)
            search_provider: Search backend (default from settings)
            use_cache: Serve and store results in the result cache

        Returns:
            The company report as markdown
        """
        request = ResearchRequest(
            kind=ResearchKind.COMPANY,
            company_name=company_name,
            company_website=company_website,
            industry=industry,
            competitors=competitors or [],
            additional_context=additional_context,
            search_depth=search_depth,
            language=language,
            provider_id=provider,
            search_provider_id=search_provider,
            use_cache=use_cache,
        )
        return await execute(request, ctx, progress)

    @server.tool(task=TaskConfig(mode="optional"))
    async def run_market_research(
        query: str,
        industry: str | None = None,
        timeframe: str | None = None,
        search_depth: SearchDepth = SearchDepth.MEDIUM,
        language: str | None = None,
        provider: str | None = None,
        search_provider: str | None = None,
        use_cache: bool = True,
        ctx: Context = CurrentContext(),
        progress: Progress = Progress(),
    ) -> str:
        """
        Research a market: size, growth, players, trends and outlook.

        Args:
            query: Market to research
            industry: Industry the market belongs to
            timeframe: Period of interest, e.g. "2024-2030"
            search_depth: fast, medium or deep
            language: Language the report should be written in
            provider: LLM provider (default from settings)
            search_provider: Search backend (default from settings)
            use_cache: Serve and store results in the result cache

        Returns:
            The market report as markdown
        """
        request = ResearchRequest(
            kind=ResearchKind.MARKET,
            query=query,
            industry=industry,
            timeframe=timeframe,
            search_depth=search_depth,
            language=language,
            provider_id=provider,
            search_provider_id=search_provider,
            use_cache=use_cache,
        )
        return await execute(request, ctx, progress)

    @server.tool(task=TaskConfig(mode="optional"))
    async def run_bulk_company_research(
        companies: list[str],
        language: str | None = None,
        provider: str | None = None,
        search_provider: str | None = None,
        use_cache: bool = True,
        ctx: Context = CurrentContext(),
        progress: Progress = Progress(),
    ) -> str:
        """
        Run fast company research on several companies and combine the reports.

        One failing company does not fail the batch.

        Args:
            companies: Company names
            language: Language the reports should be written in
            provider: LLM provider (default from settings)
            search_provider: Search backend (default from settings)
            use_cache: Serve and store results in the result cache

        Returns:
            The combined reports as markdown
        """
        request = ResearchRequest(
            kind=ResearchKind.BULK_COMPANY,
            companies=companies,
            language=language,
            provider_id=provider,
            search_provider_id=search_provider,
            use_cache=use_cache,
        )
        return await execute(request, ctx, progress)

    # --- Session management ---

    @server.tool()
    async def research_list(limit: int = 20, state_filter: str | None = None) -> str:
        """
        List recent research sessions.

        Args:
            limit: Maximum number of sessions to return (default 20)
            state_filter: Optional state filter (pending, running, completed, failed, cancelled)

        Returns:
            JSON list of sessions, newest first
        """
        state = None
        if state_filter:
            try:
                state = SessionState(state_filter)
            except ValueError:
                return f"Error: Invalid state '{state_filter}'. Use: {', '.join(s.value for s in SessionState)}"

        sessions = sorted(list_sessions(), key=lambda s: s.created_at, reverse=True)
        sessions = [s for s in sessions if state is None or s.state == state][:limit]
        return json.dumps({"sessions": [s.to_summary() for s in sessions], "count": len(sessions)}, indent=2)

    @server.tool()
    async def research_cancel(research_id: str) -> str:
        """
        Cancel a running research session.

        Args:
            research_id: Research ID (full or prefix match)

        Returns:
            JSON with success status and message
        """
        matched = next((s for s in list_sessions() if s.id.startswith(research_id) and s.state == SessionState.RUNNING), None)
        if matched is None:
            return json.dumps({"success": False, "error": f"Research '{research_id}' not found or not running"})

        await cancel_session(matched.id)
        return json.dumps({"success": True, "research_id": matched.id, "message": "Research cancelled"})

    # --- Cache tools ---

    @server.tool()
    async def cache_stats() -> str:
        """
        Result cache statistics: entries, hit rate and estimated savings.

        Returns:
            JSON object with cache statistics
        """
        cache = get_runner().cache
        if cache is None:
            return json.dumps({"enabled": False})
        return json.dumps({"enabled": True, **cache.info()}, indent=2)

    @server.tool()
    async def cache_clear(kind: str | None = None) -> str:
        """
        Clear the result cache.

        Args:
            kind: Only clear one kind (company-research, market-research, bulk-company-research, free-form-research)

        Returns:
            JSON with the number of entries removed
        """
        cache = get_runner().cache
        if cache is None:
            return json.dumps({"success": False, "error": "Cache is disabled"})
        cache_type = None
        if kind:
            try:
                cache_type = CacheType(kind)
            except ValueError:
                return f"Error: Invalid kind '{kind}'. Use: {', '.join(t.value for t in CacheType)}"
        removed = await cache.clear(cache_type)
        return json.dumps({"success": True, "removed": removed})

    @server.tool()
    async def health_check() -> str:
        """
        Health check with system stats and running research sessions.

        Returns:
            JSON object with server health status, running sessions, and statistics
        """
        process = psutil.Process()
        memory_info = process.memory_info()
        active = get_runner()
        running = [s for s in list_sessions() if s.state == SessionState.RUNNING]

        return json.dumps(
            {
                "status": "healthy",
                "uptime_seconds": round(time.time() - _server_start_time, 1),
                "memory_mb": round(memory_info.rss / 1024 / 1024, 1),
                "running_sessions": len(running),
                "sessions": [s.to_summary() for s in running],
                "concurrency": {
                    "available": active.semaphore.available,
                    "waiting": active.semaphore.waiting,
                    "pending_requests": active.request_manager.get_pending_count(),
                },
                "cache": active.cache.stats.to_dict() if active.cache is not None else None,
            },
            indent=2,
        )

    # --- HTTP route ---

    @server.custom_route("/api/research", methods=["POST"])
    async def research_stream(request: Request) -> Response:
        """Start a research session and stream its events as server-sent events."""
        try:
            research_request = ResearchRequest.model_validate(await request.json())
        except (json.JSONDecodeError, ValidationError) as e:
            return JSONResponse({"error": f"Invalid research request: {e}"}, status_code=400)

        session = create_session(research_request, keepalive_interval=settings.research.keepalive_interval)
        task = start_session(session, get_runner())

        async def event_source():
            try:
                async for chunk in session.stream.iter_sse():
                    yield chunk
            finally:
                # Client went away before the session finished
                if not task.done():
                    logger.info(f"Client disconnected, cancelling research {session.id}")
                    await cancel_session(session.id)

        return StreamingResponse(event_source(), media_type="text/event-stream", headers=SSE_HEADERS)

    return server


class _ProgressRelay:
    """Turns research events into MCP progress notifications and log messages."""

    def __init__(self, ctx: Context, progress: Progress):
        self.ctx = ctx
        self.progress = progress
        self.total = 0

    async def handle(self, event: Event) -> None:
        data = event.data
        match event.type:
            case EventType.PROGRESS:
                await self._on_progress(data)
            case EventType.COMPANY_START:
                await self.ctx.info(f"Researching {data['company']}")
            case EventType.COMPANY_COMPLETE:
                await self.progress.increment()
                await self.ctx.info(f"Finished {data['company']}")
            case EventType.COMPANY_ERROR:
                await self.progress.increment()
                await self.ctx.warning(f"{data['company']} failed: {data['message']}")
            case EventType.ERROR:
                await self.ctx.error(data["message"])

    async def _on_progress(self, data: dict[str, Any]) -> None:
        step, status = data.get("step"), data.get("status")
        match (step, status):
            case ("serp-query" | "review", "end"):
                self.total += len(data.get("data") or [])
                await self.progress.set_total(max(self.total, 1))
            case ("bulk", "start"):
                await self.progress.set_total(data["total"])
            case ("search-task", "end"):
                await self.progress.increment()
                await self.progress.set_message(f"Done: {data['name'][:80]}")
            case ("search-task", "failed"):
                await self.progress.increment()
                await self.ctx.warning(f"Search failed for '{data['name'][:80]}': {data.get('error')}")
            case ("report-plan" | "final-report", "start"):
                await self.progress.set_message(f"Writing {step.replace('-', ' ')}...")
            case ("cache", "hit"):
                await self.progress.set_message("Cache hit")


# Track server start time for uptime calculation
_server_start_time = time.time()


server_instance = serve()


def main() -> None:
    """Entry point for MCP server."""
    transport = settings.server.transport

    if transport == "stdio":
        logger.info(f"Starting MCP deep research server (provider: {settings.llm.provider}, transport: stdio)")
        server_instance.run(transport="stdio")
    elif transport in ("streamable-http", "sse"):
        logger.info(f"Starting MCP deep research server (provider: {settings.llm.provider}, transport: {transport})")
        logger.info(f"HTTP server at http://{settings.server.host}:{settings.server.port}/mcp")
        server_instance.run(transport=transport, host=settings.server.host, port=settings.server.port)
    else:
        raise ValueError(f"Unknown transport: {transport}")


if __name__ == "__main__":
    main()
