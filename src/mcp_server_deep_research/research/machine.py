"""Research state machine: plan, search, synthesize, decide, report."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import uuid4

from ..concurrency import Mutex, RequestManager, Semaphore, get_api_semaphore, get_request_manager
from ..events import EventType
from ..exceptions import CancellationError, ResearchEngineError, UpstreamError
from ..observability import get_research_logger
from ..text import ThinkTagStreamProcessor, extract_title, parse_sections, strip_think_tags
from ..timeouts import DEFAULT_MODEL_TIMEOUTS, DepthPolicy, ModelTimeouts, is_retryable, retry_with_backoff, with_timeout
from .models import ImageSource, ResearchResult, ResearchStage, ResearchTask, SearchResponse, Source, TaskState
from .prompts import (
    get_final_report_prompt,
    get_knowledge_prompt,
    get_review_prompt,
    get_search_result_prompt,
    get_system_prompt,
    language_instruction,
)
from .templates import ResearchTemplate, TaskStub, parse_task_stubs

if TYPE_CHECKING:
    from ..providers import TextModel
    from ..search import SearchProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

EventCallback = Callable[[EventType, dict[str, Any]], Any]


def new_research_id() -> str:
    return uuid4().hex[:12]


def unique_by_url(items: Iterable[Source | ImageSource]) -> list:
    seen: set[str] = set()
    unique = []
    for item in items:
        if item.url not in seen:
            seen.add(item.url)
            unique.append(item)
    return unique


class ResearchMachine:
    """Runs one research session.

    Planning → Searching → Synthesizing → (Deciding → Searching → ...) → Reporting → Done.
    Any fatal error moves the machine to Errored and is re-raised with the failing
    stage and the partial learnings attached. A failed search task is recorded on
    the task and never aborts its siblings.
    """

    def __init__(
        self,
        template: ResearchTemplate,
        thinking_model: "TextModel",
        task_model: "TextModel",
        search_provider: "SearchProvider | None",
        policy: DepthPolicy,
        emit: EventCallback | None = None,
        semaphore: Semaphore | None = None,
        request_manager: RequestManager | None = None,
        research_id: str | None = None,
        thinking_timeouts: ModelTimeouts = DEFAULT_MODEL_TIMEOUTS,
        task_timeouts: ModelTimeouts = DEFAULT_MODEL_TIMEOUTS,
        language: str | None = None,
        enable_references: bool = True,
        enable_citation_image: bool = True,
        suggestion: str | None = None,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.template = template
        self.thinking_model = thinking_model
        self.task_model = task_model
        self.search_provider = search_provider
        self.policy = policy
        self.emit = emit
        self.semaphore = semaphore or get_api_semaphore()
        self.request_manager = request_manager or get_request_manager()
        self.research_id = research_id or new_research_id()
        self.thinking_timeouts = thinking_timeouts
        self.task_timeouts = task_timeouts
        self.language = language
        self.enable_references = enable_references
        self.enable_citation_image = enable_citation_image
        self.suggestion = suggestion
        self.sleep_func = sleep_func

        self.stage = ResearchStage.PLANNING
        self.plan = ""
        self.tasks: list[ResearchTask] = []
        self.round = 0
        self._state_lock = Mutex()
        self._cancelled = False
        self._started_at: float | None = None
        self.failed_stage: ResearchStage | None = None

    @property
    def system_prompt(self) -> str:
        return get_system_prompt() + language_instruction(self.language)

    @property
    def learnings(self) -> list[str]:
        return [task.learning for task in self.tasks if task.state is TaskState.COMPLETED and task.learning]

    def partial_payload(self) -> dict[str, Any]:
        """What was learned so far; attached to errors so a failed session still yields its findings."""
        return {
            "plan": self.plan,
            "learnings": self.learnings,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    # --- Events ---

    def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.emit is not None:
            self.emit(event_type, data)

    def _progress(self, step: str, status: str, **extra: Any) -> None:
        self._emit(EventType.PROGRESS, {"step": step, "status": status, **extra})

    def _set_stage(self, stage: ResearchStage) -> None:
        logger.debug(f"[{self.research_id}] {self.stage.value} -> {stage.value}")
        self.stage = stage

    # --- Run ---

    async def run(self) -> ResearchResult:
        """Execute the research workflow and return the result."""
        self._started_at = time.monotonic()
        try:
            self._set_stage(ResearchStage.PLANNING)
            self._progress("report-plan", "start")
            self.plan = await self._stream_text(self.thinking_model, self.template.plan_prompt(), step="report-plan", timeout=self.thinking_timeouts.thinking)
            self._progress("report-plan", "end", data=self.plan)

            self._progress("serp-query", "start")
            stubs = await self.template.initial_tasks(self)
            self.round = 1
            if not self._add_tasks(stubs):
                raise ResearchEngineError("Failed to generate search queries")
            self._progress("serp-query", "end", data=[task.to_dict() for task in self.tasks])

            while True:
                await self._run_round()
                if self.round >= self.policy.max_rounds:
                    break
                self._set_stage(ResearchStage.DECIDING)
                follow_ups = await self._review()
                self.round += 1
                if not self._add_tasks(follow_ups):
                    break

            if not self.learnings:
                errors = [task.error for task in self.tasks if task.error]
                detail = f" Last error: {errors[-1]}" if errors else ""
                raise UpstreamError(f"All {len(self.tasks)} search tasks failed.{detail}")

            self._set_stage(ResearchStage.REPORTING)
            result = await self._write_final_report()
            self._set_stage(ResearchStage.DONE)
            logger.info(f"[{self.research_id}] Research completed with {len(self.learnings)} learnings")
            return result

        except (asyncio.CancelledError, CancellationError):
            self._cancelled = True
            self.failed_stage = self.stage
            self._set_stage(ResearchStage.ERRORED)
            raise
        except ResearchEngineError as e:
            self._fail(e)
            raise
        except Exception as e:
            error = ResearchEngineError(f"Research failed during {self.stage.value}: {e}")
            self._fail(error)
            raise error from e

    def _fail(self, error: ResearchEngineError) -> None:
        self.failed_stage = self.stage
        error.stage = error.stage or self.stage.value
        error.context.setdefault("partial", self.partial_payload())
        self._set_stage(ResearchStage.ERRORED)

    async def cancel(self) -> int:
        """Stop applying results and abort this session's in-flight calls."""
        self._cancelled = True
        return self.request_manager.abort_requests(f"{self.research_id}:")

    # --- Outbound calls ---

    async def _call(
        self,
        endpoint: str,
        params: dict[str, Any],
        fn: Callable[[], Awaitable[T]],
        timeout: float,
        label: str,
        retryable: Callable[[BaseException], bool] = is_retryable,
    ) -> T:
        """One outbound call: deduplicated, bounded by the shared semaphore, timed out and retried."""

        async def bounded() -> T:
            return await with_timeout(fn(), timeout, f"{label} timed out after {timeout:g}s")

        async def attempt() -> T:
            return await self.request_manager.deduplicate_request(
                f"{self.research_id}:{endpoint}",
                params,
                lambda: self.semaphore.run_with_permit(bounded),
            )

        return await retry_with_backoff(
            attempt,
            max_retries=self.policy.max_retries,
            initial_delay=self.policy.retry_initial_delay,
            max_delay=self.policy.retry_max_delay,
            retryable=retryable,
            sleep_func=self.sleep_func,
            operation=label,
        )

    async def _stream_text(self, model: "TextModel", prompt: str, step: str, timeout: float) -> str:
        """Stream a completion as ``message`` events wrapped in ``<step>`` markers; ``<think>`` text becomes ``reasoning``."""
        emitted = False

        def on_content(text: str) -> None:
            nonlocal emitted
            emitted = True
            self._emit(EventType.MESSAGE, {"type": "text", "text": text, "step": step})

        def on_reasoning(text: str) -> None:
            self._emit(EventType.REASONING, {"type": "text", "text": text, "step": step})

        async def consume() -> str:
            processor = ThinkTagStreamProcessor()
            parts: list[str] = []

            def collect(text: str) -> None:
                parts.append(text)
                on_content(text)

            async for chunk in model.stream(prompt, system=self.system_prompt):
                processor.process_chunk(chunk, collect, on_reasoning)
            processor.end(collect, on_reasoning)
            return "".join(parts)

        self._emit(EventType.MESSAGE, {"type": "text", "text": f"<{step}>\n", "step": step})
        text = await self._call(
            step,
            {"round": self.round},
            consume,
            timeout=timeout,
            label=f"{step} generation",
            # A stream that already produced output cannot be replayed cleanly
            retryable=lambda e: is_retryable(e) and not emitted,
        )
        self._emit(EventType.MESSAGE, {"type": "text", "text": f"\n</{step}>\n\n", "step": step})
        return text.strip()

    async def generate_queries(self, prompt: str) -> list[TaskStub]:
        """Ask the thinking model for a list of search queries."""
        text = await self._call(
            "serp-query",
            {"round": self.round},
            lambda: self.thinking_model.generate(prompt, system=self.system_prompt),
            timeout=self.thinking_timeouts.thinking,
            label="Query generation",
        )
        return parse_task_stubs(text)

    # --- Tasks ---

    def _add_tasks(self, stubs: Iterable[TaskStub]) -> int:
        """Append unseen queries, at most ``max_queries`` per batch. Returns how many were added."""
        seen = {task.query.strip().lower() for task in self.tasks}
        added = 0
        for stub in stubs:
            if added >= self.policy.max_queries:
                break
            normalized = stub.query.strip().lower()
            if not normalized or normalized in seen:
                continue
            seen.add(normalized)
            self.tasks.append(ResearchTask(query=stub.query.strip(), research_goal=stub.research_goal, section=stub.section, round=self.round))
            added += 1
        return added

    async def _apply(self, task: ResearchTask, **changes: Any) -> bool:
        """Mutate a task under the state lock. Late results for settled tasks or cancelled sessions are dropped."""

        async def apply() -> bool:
            if self._cancelled:
                return False
            if changes.get("state") in (TaskState.COMPLETED, TaskState.FAILED) and task.state is not TaskState.PROCESSING:
                return False
            for name, value in changes.items():
                setattr(task, name, value)
            return True

        return await self._state_lock.run_exclusive(apply)

    async def _run_round(self) -> None:
        batch = [task for task in self.tasks if task.state is TaskState.UNPROCESSED]
        self._progress("task-list", "start", round=self.round, data=[task.query for task in batch])

        self._set_stage(ResearchStage.SEARCHING)
        responses = await asyncio.gather(*(self._search_task(task) for task in batch))

        self._set_stage(ResearchStage.SYNTHESIZING)
        await asyncio.gather(
            *(self._synthesize_task(task, response) for task, response in zip(batch, responses) if task.state is TaskState.PROCESSING)
        )
        self._progress("task-list", "end", round=self.round)

    async def _search_task(self, task: ResearchTask) -> SearchResponse | None:
        await self._apply(task, state=TaskState.PROCESSING)
        self._progress("search-task", "start", name=task.query)
        if self.search_provider is None:
            return None

        provider = self.search_provider
        try:
            return await self._call(
                "search",
                {"query": task.query, "maxResults": self.policy.max_results},
                lambda: provider.search(task.query, max_results=self.policy.max_results),
                timeout=self.policy.search_timeout,
                label=f"Search '{task.query}'",
            )
        except CancellationError:
            raise
        except Exception as e:
            await self._fail_task(task, e)
            return None

    async def _synthesize_task(self, task: ResearchTask, response: SearchResponse | None) -> None:
        sources = unique_by_url(response.sources)[: self.policy.max_results] if response else []
        images = unique_by_url(response.images)[: self.policy.max_results] if response else []

        context = [f"{s.title or s.url}\n{s.url}\n{s.content or ''}".strip() for s in sources]
        if not context and response and response.answer:
            context = [response.answer]
        if context:
            prompt = get_search_result_prompt(task.query, task.research_goal, context)
        else:
            prompt = get_knowledge_prompt(task.query, task.research_goal)

        try:
            text = await self._call(
                "learning",
                {"query": task.query},
                lambda: self.task_model.generate(prompt, system=self.system_prompt),
                timeout=self.task_timeouts.task,
                label=f"Learning for '{task.query}'",
            )
        except CancellationError:
            raise
        except Exception as e:
            await self._fail_task(task, e)
            return

        learning = strip_think_tags(text)
        if not await self._apply(task, state=TaskState.COMPLETED, learning=learning, sources=sources, images=images):
            return

        self._emit(EventType.MESSAGE, {"type": "text", "text": self._format_task_block(task), "step": "search-task", "name": task.query})
        self._progress("search-task", "end", name=task.query, data=task.to_dict())

    def _format_task_block(self, task: ResearchTask) -> str:
        parts = [f"<search-task>\n## {task.query}\n\n{task.learning}"]
        if self.enable_references and task.sources:
            refs = "\n".join(f'[{i + 1}]: {s.url}' + (f' "{s.title}"' if s.title else "") for i, s in enumerate(task.sources))
            parts.append(refs)
        if self.enable_citation_image and task.images:
            parts.append("\n".join(f"![{img.description or ''}]({img.url})" for img in task.images))
        return "\n\n".join(parts) + "\n</search-task>\n\n"

    async def _fail_task(self, task: ResearchTask, error: Exception) -> None:
        if await self._apply(task, state=TaskState.FAILED, error=str(error)):
            get_research_logger().warning("search_task_failed", query=task.query, error=str(error))
            self._progress("search-task", "failed", name=task.query, error=str(error))

    # --- Deciding ---

    async def _review(self) -> list[TaskStub]:
        """Ask the thinking model whether to dig deeper. An unusable answer ends the loop."""
        self._progress("review", "start", round=self.round)
        prompt = get_review_prompt(self.plan, self.learnings, self.policy.max_queries, self.suggestion)
        text = await self._call(
            "review",
            {"round": self.round},
            lambda: self.thinking_model.generate(prompt, system=self.system_prompt),
            timeout=self.thinking_timeouts.thinking,
            label="Review",
        )
        stubs = parse_task_stubs(text, fallback=False)
        self._progress("review", "end", round=self.round, data=[stub.query for stub in stubs])
        return stubs

    # --- Reporting ---

    async def _write_final_report(self) -> ResearchResult:
        self._progress("final-report", "start")
        completed = [task for task in self.tasks if task.state is TaskState.COMPLETED]
        sources = unique_by_url(s for task in completed for s in task.sources)[: self.policy.max_sources]
        images = unique_by_url(i for task in completed for i in task.images)[: self.policy.max_images] if self.enable_citation_image else []

        prompt = get_final_report_prompt(
            self.plan,
            self.learnings,
            [s.to_dict() for s in sources],
            [i.to_dict() for i in images],
            requirement=self.template.report_requirement(),
            enable_references=self.enable_references,
        )
        report = await self._stream_text(self.thinking_model, prompt, step="final-report", timeout=self.thinking_timeouts.total)
        if not report:
            raise UpstreamError("The model returned an empty report", provider=getattr(self.thinking_model, "provider", None))

        title = extract_title(report) or self.template.title
        failed = sum(1 for task in self.tasks if task.state is TaskState.FAILED)
        result = ResearchResult(
            research_id=self.research_id,
            kind=self.template.kind,
            title=title,
            report=report,
            learnings=self.learnings,
            sources=sources,
            images=images,
            tasks=list(self.tasks),
            sections=parse_sections(report),
            metadata={
                **self.template.metadata(),
                "searchDepth": self.policy.depth.value,
                "rounds": self.round,
                "taskCount": len(self.tasks),
                "failedTaskCount": failed,
                "completedAt": datetime.now(UTC).isoformat(),
                "durationSeconds": round(time.monotonic() - (self._started_at or time.monotonic()), 2),
            },
        )
        self._progress("final-report", "end", data={"title": title})
        return result
