"""CLI interface for the deep research MCP server."""

import asyncio
import json
import sys

import typer

from .cache import CacheType
from .config import settings
from .events import EventStream, EventType
from .exceptions import ResearchEngineError
from .research.models import ResearchKind, ResearchRequest, SearchDepth

app = typer.Typer(help="Deep research CLI: plan, search and write cited reports")
cache_app = typer.Typer(help="Inspect and clear the result cache")
app.add_typer(cache_app, name="cache")


def _print_progress(event_type: EventType, data: dict) -> None:
    match event_type:
        case EventType.PROGRESS if data.get("step") == "search-task" and data.get("status") in ("end", "failed"):
            print(f"  [{data['status']}] {data['name']}", file=sys.stderr)
        case EventType.PROGRESS if data.get("status") == "start" and data.get("step") != "search-task":
            print(f"{data['step']}...", file=sys.stderr)
        case EventType.COMPANY_START:
            print(f"Researching {data['company']}...", file=sys.stderr)
        case EventType.COMPANY_ERROR:
            print(f"  {data['company']} failed: {data['message']}", file=sys.stderr)


def _run_request(request: ResearchRequest, verbose: bool) -> None:
    """Run one session, printing progress to stderr and the report to stdout."""
    from .research.runner import ResearchRunner

    async def _research() -> dict:
        stream = EventStream(keepalive_interval=settings.research.keepalive_interval)
        runner = ResearchRunner()

        async def consume() -> None:
            async for event in stream:
                if verbose:
                    _print_progress(event.type, event.data)

        consumer = asyncio.create_task(consume())
        try:
            return await runner.run(request, stream)
        finally:
            await consumer

    try:
        result = asyncio.run(_research())
    except ResearchEngineError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        raise typer.Exit(code=1) from e

    if result["metadata"].get("cached"):
        print("(served from cache)", file=sys.stderr)
    print(result["report"])


@app.command()
def research(
    query: str = typer.Argument(..., help="Question or topic to research"),
    depth: SearchDepth = typer.Option(SearchDepth.MEDIUM, "--depth", "-d", help="Search depth"),
    language: str = typer.Option(None, "--language", "-l", help="Report language"),
    search_provider: str = typer.Option(None, "--search", help="Search provider"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Bypass the result cache"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print the report"),
) -> None:
    """Research a free-form question."""
    request = ResearchRequest(
        kind=ResearchKind.FREE_FORM,
        query=query,
        search_depth=depth,
        language=language,
        search_provider_id=search_provider,
        use_cache=not no_cache,
    )
    _run_request(request, verbose=not quiet)


@app.command()
def company(
    name: str = typer.Argument(..., help="Company name"),
    website: str = typer.Option(None, "--website", "-w", help="Company website"),
    industry: str = typer.Option(None, "--industry", "-i", help="Industry"),
    competitors: str = typer.Option(None, "--competitors", "-c", help="Comma-separated competitors"),
    context: str = typer.Option(None, "--context", help="Additional context"),
    depth: SearchDepth = typer.Option(SearchDepth.FAST, "--depth", "-d", help="Search depth"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Bypass the result cache"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print the report"),
) -> None:
    """Write an investment research report on a company."""
    request = ResearchRequest(
        kind=ResearchKind.COMPANY,
        company_name=name,
        company_website=website,
        industry=industry,
        competitors=competitors or [],
        additional_context=context,
        search_depth=depth,
        use_cache=not no_cache,
    )
    _run_request(request, verbose=not quiet)


@app.command()
def market(
    query: str = typer.Argument(..., help="Market to research"),
    industry: str = typer.Option(None, "--industry", "-i", help="Industry"),
    timeframe: str = typer.Option(None, "--timeframe", "-t", help="Timeframe, e.g. 2024-2030"),
    depth: SearchDepth = typer.Option(SearchDepth.MEDIUM, "--depth", "-d", help="Search depth"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Bypass the result cache"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print the report"),
) -> None:
    """Research a market."""
    request = ResearchRequest(
        kind=ResearchKind.MARKET,
        query=query,
        industry=industry,
        timeframe=timeframe,
        search_depth=depth,
        use_cache=not no_cache,
    )
    _run_request(request, verbose=not quiet)


@app.command()
def bulk(
    companies: str = typer.Argument(..., help="Comma-separated company names"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Bypass the result cache"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print the report"),
) -> None:
    """Run fast company research on several companies."""
    request = ResearchRequest(kind=ResearchKind.BULK_COMPANY, companies=companies, use_cache=not no_cache)
    _run_request(request, verbose=not quiet)


@cache_app.command("stats")
def cache_stats() -> None:
    """Show result cache statistics."""
    from .cache import get_research_cache

    async def _stats() -> dict:
        cache = get_research_cache()
        await cache.load()
        return cache.info()

    print(json.dumps(asyncio.run(_stats()), indent=2))


@cache_app.command("clear")
def cache_clear(
    kind: CacheType = typer.Option(None, "--kind", "-k", help="Only clear one kind of result"),
) -> None:
    """Clear the result cache."""
    from .cache import get_research_cache

    async def _clear() -> int:
        cache = get_research_cache()
        await cache.load()
        return await cache.clear(kind)

    print(f"Removed {asyncio.run(_clear())} cached results")


@app.command()
def config() -> None:
    """Show current configuration."""
    print(f"Provider: {settings.llm.provider}")
    print(f"Thinking model: {settings.llm.thinking_model}")
    print(f"Task model: {settings.llm.task_model}")
    print(f"Base URL: {settings.llm.base_url or '(default)'}")
    print(f"Search provider: {settings.search.provider}")
    print(f"Max concurrency: {settings.research.max_concurrency}")
    print(f"Timeouts (fast/medium/deep): {settings.research.fast_timeout:g}s / {settings.research.medium_timeout:g}s / {settings.research.deep_timeout:g}s")
    print(f"Cache: {'enabled' if settings.cache.enabled else 'disabled'} (persist: {settings.cache.persist})")
    print(f"Save directory: {settings.research.save_directory or settings.server.results_dir or '(none)'}")


@app.command()
def server() -> None:
    """Start the MCP server with the configured transport."""
    from .server import main

    main()


if __name__ == "__main__":
    app()
