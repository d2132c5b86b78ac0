"""Session runner: turns a ResearchRequest into events on an EventStream.

Each run emits ``info`` first, then progress/message events, then exactly one
terminal event (``complete`` or ``error``), then closes the stream.
"""

import asyncio
import logging
import time
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from ..cache import ResearchCache, build_cache_key, get_research_cache, is_cacheable
from ..concurrency import RequestManager, Semaphore, get_api_semaphore, get_request_manager
from ..config import AppSettings, settings
from ..events import EventStream, EventType, connection_info
from ..exceptions import CancellationError, ConfigurationError, ResearchEngineError, ResearchTimeoutError, UpstreamError
from ..observability import research_context
from ..providers import ProviderFactory, build_provider_registry
from ..timeouts import SearchDepth, get_depth_policy, with_timeout
from ..utils import save_execution_result
from .machine import ResearchMachine, new_research_id
from .models import ResearchKind, ResearchRequest
from .session import SessionConfig, resolve_session_config
from .templates import CompanyResearchTemplate, create_template

if TYPE_CHECKING:
    from ..providers import TextModel
    from ..search import SearchProvider

logger = logging.getLogger(__name__)

# Per-company events in bulk mode
_COMPANY_EVENTS = {
    EventType.PROGRESS: EventType.COMPANY_PROGRESS,
    EventType.MESSAGE: EventType.COMPANY_MESSAGE,
}


class ResearchRunner:
    """Runs research sessions against shared infrastructure (cache, semaphore, request manager)."""

    def __init__(
        self,
        app_settings: AppSettings | None = None,
        factory: ProviderFactory | None = None,
        cache: ResearchCache | None = None,
        semaphore: Semaphore | None = None,
        request_manager: RequestManager | None = None,
        sleep_func=asyncio.sleep,
    ):
        self.settings = app_settings or settings
        self.factory = factory or ProviderFactory(build_provider_registry(self.settings))
        if cache is None and self.settings.cache.enabled:
            cache = get_research_cache()
        self.cache = cache
        self.semaphore = semaphore or get_api_semaphore()
        self.request_manager = request_manager or get_request_manager()
        self.sleep_func = sleep_func

    async def run(self, request: ResearchRequest, stream: EventStream, research_id: str | None = None) -> dict[str, Any]:
        """Run one session to completion and return the ``complete`` payload.

        Raises:
            ResearchEngineError: After the terminal ``error`` event has been emitted.
            asyncio.CancelledError: If the session task itself is cancelled.
        """
        research_id = research_id or new_research_id()
        with research_context(research_id, request.kind.value) as task_logger:
            return await self._run(request, stream, research_id, task_logger)

    async def _run(self, request: ResearchRequest, stream: EventStream, research_id: str, task_logger) -> dict[str, Any]:
        started = time.monotonic()
        holder: dict[str, ResearchMachine] = {}

        stream.send_event(EventType.INFO, connection_info(researchId=research_id, kind=request.kind.value))
        try:
            session = resolve_session_config(request, self.settings)
            task_logger.info("research_started", subject=request.subject[:100], depth=session.policy.depth.value)

            cache_key = await self._cache_lookup_key(session)
            if cache_key:
                entry = await self.cache.get(cache_key)
                if entry is not None:
                    task_logger.info("cache_hit", key=cache_key, hit_count=entry.hit_count)
                    payload = {**entry.data, "metadata": {**entry.data.get("metadata", {}), "researchId": research_id, "cached": True, "cacheKey": cache_key}}
                    stream.send_event(EventType.PROGRESS, {"step": "cache", "status": "hit", "key": cache_key})
                    stream.send_event(EventType.COMPLETE, payload)
                    return payload
                task_logger.info("cache_miss", key=cache_key)

            thinking = self.factory.create_text_model(session.thinking)
            task = thinking if session.task == session.thinking else self.factory.create_text_model(session.task)
            search = self.factory.create_search_provider(session.search_provider, session.search_api_key, task_model=task)

            budget = session.policy.session_timeout
            try:
                async with asyncio.timeout(budget):
                    if session.kind is ResearchKind.BULK_COMPANY:
                        payload = await self._run_bulk(session, research_id, thinking, task, search, stream)
                    else:
                        machine = self._build_machine(session, research_id, thinking, task, search, stream.send_event)
                        holder["machine"] = machine
                        result = await machine.run()
                        payload = result.to_payload()
            except ResearchTimeoutError:
                raise
            except TimeoutError as e:
                depth = session.policy.depth.value
                raise ResearchTimeoutError(
                    f"Research exceeded the {depth} time budget of {budget:g}s. Try the 'fast' search depth or a faster model."
                ) from e

            payload["metadata"]["durationSeconds"] = round(time.monotonic() - started, 2)
            if cache_key:
                await self.cache.set(cache_key, payload, kind=session.kind, request_params=session.cache_params())
            self._save_report(session, payload)

            stream.send_event(EventType.COMPLETE, payload)
            task_logger.info("research_completed", duration=payload["metadata"]["durationSeconds"], sources=len(payload.get("sources", [])))
            return payload

        except asyncio.CancelledError:
            self._emit_error(stream, research_id, CancellationError("Research was cancelled"), holder.get("machine"))
            task_logger.info("research_cancelled")
            raise
        except CancellationError as e:
            self._emit_error(stream, research_id, e, holder.get("machine"))
            task_logger.info("research_cancelled")
            raise
        except ResearchEngineError as e:
            self._emit_error(stream, research_id, e, holder.get("machine"))
            task_logger.error("research_failed", error=e.message, error_type=e.error_type, stage=e.stage)
            raise
        except Exception as e:
            error = ResearchEngineError(f"Unexpected error: {e}")
            self._emit_error(stream, research_id, error, holder.get("machine"))
            task_logger.error("research_failed", error=str(e), error_type="internal")
            raise error from e
        finally:
            self.request_manager.abort_requests(research_id)
            stream.close()

    async def cancel(self, research_id: str) -> int:
        return self.request_manager.abort_requests(research_id)

    # --- Helpers ---

    async def _cache_lookup_key(self, session: SessionConfig) -> str | None:
        if self.cache is None or not session.request.use_cache:
            return None
        params = session.cache_params()
        if not is_cacheable(session.kind, params):
            logger.debug("Request is not cacheable, skipping cache")
            return None
        await self.cache.load()
        return build_cache_key(session.kind, params)

    def _build_machine(
        self,
        session: SessionConfig,
        research_id: str,
        thinking: "TextModel",
        task: "TextModel",
        search: "SearchProvider | None",
        emit,
        template=None,
        policy=None,
    ) -> ResearchMachine:
        policy = policy or session.policy
        return ResearchMachine(
            template=template or create_template(session.request, policy),
            thinking_model=thinking,
            task_model=task,
            search_provider=search,
            policy=policy,
            emit=emit,
            semaphore=self.semaphore,
            request_manager=self.request_manager,
            research_id=research_id,
            thinking_timeouts=session.thinking_timeouts,
            task_timeouts=session.task_timeouts,
            language=session.language,
            enable_references=session.enable_references,
            enable_citation_image=session.enable_citation_image,
            sleep_func=self.sleep_func,
        )

    def _emit_error(self, stream: EventStream, research_id: str, error: ResearchEngineError, machine: ResearchMachine | None) -> None:
        stage = error.stage
        partial = error.context.get("partial")
        if machine is not None:
            stage = stage or (machine.failed_stage.value if machine.failed_stage else machine.stage.value)
            partial = partial or machine.partial_payload()
        stream.send_event(
            EventType.ERROR,
            {
                "message": error.message,
                "researchId": research_id,
                "stage": stage,
                "errorType": error.error_type,
                "partial": partial,
            },
        )

    def _save_report(self, session: SessionConfig, payload: dict[str, Any]) -> None:
        directory = self.settings.research.save_directory or self.settings.server.results_dir
        if not directory:
            return
        try:
            save_execution_result(
                payload["report"],
                prefix=f"{session.kind.value}_{session.request.subject[:20]}",
                metadata=payload["metadata"],
                directory=directory,
            )
        except (OSError, RuntimeError) as e:
            logger.error(f"Failed to save report: {e}")

    async def _run_bulk(
        self,
        session: SessionConfig,
        research_id: str,
        thinking: "TextModel",
        task: "TextModel",
        search: "SearchProvider | None",
        stream: EventStream,
    ) -> dict[str, Any]:
        """Fast company research for each company, a few at a time. One failed company does not fail the batch."""
        seen: set[str] = set()
        companies = []
        for name in session.request.companies:
            if name.strip() and name.strip().lower() not in seen:
                seen.add(name.strip().lower())
                companies.append(name.strip())
        if not companies:
            raise ConfigurationError("Bulk company research needs at least one company")

        research = self.settings.research
        limiter = Semaphore(max(1, research.bulk_batch_size))
        policy = get_depth_policy(SearchDepth.FAST, session_timeout=research.bulk_item_timeout)
        stream.send_event(EventType.PROGRESS, {"step": "bulk", "status": "start", "total": len(companies)})

        async def research_company(index: int, name: str) -> dict[str, Any]:
            async with limiter:
                stream.send_event(EventType.COMPANY_START, {"company": name, "index": index, "total": len(companies)})

                def emit(event_type: EventType, data: dict[str, Any]) -> None:
                    mapped = _COMPANY_EVENTS.get(event_type)
                    if mapped is not None:
                        stream.send_event(mapped, {"company": name, "index": index, **data})

                request = session.request.model_copy(update={"kind": ResearchKind.COMPANY, "company_name": name, "search_depth": SearchDepth.FAST})
                company_session = replace(session, request=request, policy=policy)
                company_id = f"{research_id}-{index}"
                machine = self._build_machine(
                    company_session,
                    company_id,
                    thinking,
                    task,
                    search,
                    emit,
                    template=CompanyResearchTemplate(request, policy),
                    policy=policy,
                )
                finished = False
                try:
                    with research_context(company_id, ResearchKind.COMPANY.value, company=name):
                        result = await with_timeout(machine.run(), policy.session_timeout, f"Research on {name} timed out after {policy.session_timeout:g}s")
                    finished = True
                except CancellationError:
                    raise
                except ResearchEngineError as e:
                    logger.warning(f"Bulk research failed for {name}: {e.message}")
                    stream.send_event(EventType.COMPANY_ERROR, {"company": name, "index": index, "message": e.message, "errorType": e.error_type})
                    return {"companyName": name, "status": "failed", "error": e.message}
                finally:
                    # Abort this company's searches so their permits go back to the pool
                    if not finished:
                        await machine.cancel()

                payload = result.to_payload()
                stream.send_event(EventType.COMPANY_COMPLETE, {"company": name, "index": index, **payload})
                return {"companyName": name, "status": "completed", **payload}

        outcomes = await asyncio.gather(*(research_company(i, name) for i, name in enumerate(companies)))
        completed = [o for o in outcomes if o["status"] == "completed"]
        stream.send_event(EventType.PROGRESS, {"step": "bulk", "status": "end", "completed": len(completed), "failed": len(outcomes) - len(completed)})
        if not completed:
            raise UpstreamError(f"Research failed for all {len(companies)} companies. Last error: {outcomes[-1]['error']}")

        report = "\n\n---\n\n".join(o["report"] for o in completed)
        return {
            "title": f"Bulk company research ({len(completed)}/{len(companies)} companies)",
            "report": report,
            "results": outcomes,
            "sources": [s for o in completed for s in o["sources"]],
            "images": [i for o in completed for i in o["images"]],
            "metadata": {
                "researchId": research_id,
                "kind": ResearchKind.BULK_COMPANY.value,
                "companies": companies,
                "completedCount": len(completed),
                "failedCount": len(outcomes) - len(completed),
                "completedAt": datetime.now(UTC).isoformat(),
            },
        }
