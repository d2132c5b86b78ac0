"""Concurrency primitives shared by every research session.

Provides:
- Semaphore: counting semaphore with strict FIFO hand-off between waiters
- Mutex: single-permit Semaphore
- RequestManager: in-flight deduplication, prefix-scoped abort, and per-queue sequencing
- get_api_semaphore(): the process-wide cap on concurrent outbound model/search calls
"""

import asyncio
import json
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .exceptions import CancellationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_API_CONCURRENCY = 5
DEFAULT_DEDUP_WINDOW = 5.0


class Semaphore:
    """Counting semaphore that wakes waiters in arrival order.

    ``release()`` hands the permit directly to the oldest live waiter, so a
    later arrival can never overtake a queued one.
    """

    def __init__(self, permits: int):
        if permits < 1:
            raise ValueError("Semaphore needs at least one permit")
        self._max_permits = permits
        self._permits = permits
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def max_permits(self) -> int:
        return self._max_permits

    @property
    def available(self) -> int:
        return self._permits

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if self._permits > 0 and not self._waiters:
            self._permits -= 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The permit was handed over just before cancellation landed: pass it on
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._permits >= self._max_permits:
            raise RuntimeError("Semaphore released more times than acquired")
        self._permits += 1

    async def run_with_permit(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` while holding a permit; the permit is returned on success, failure or cancellation."""
        await self.acquire()
        try:
            return await fn()
        finally:
            self.release()

    async def __aenter__(self) -> "Semaphore":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.release()


class Mutex(Semaphore):
    """Mutual exclusion lock with FIFO fairness."""

    def __init__(self) -> None:
        super().__init__(1)

    @property
    def locked(self) -> bool:
        return self.available == 0

    async def run_exclusive(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await self.run_with_permit(fn)


@dataclass(eq=False)
class _PendingRequest:
    task: asyncio.Task
    started_at: float
    aborted: bool = False


@dataclass
class RequestManager:
    """Tracks in-flight requests by key.

    Keys are ``"{endpoint}:{canonical-json(params)}"``. Session-scoped callers put the
    research id at the front of the endpoint so ``abort_requests(research_id)``
    cancels exactly that session's work. Every live request stays reachable for abort,
    including one that has aged out of the dedup window and been superseded.
    """

    dedup_window: float = DEFAULT_DEDUP_WINDOW
    clock: Callable[[], float] = time.monotonic
    _pending: dict[str, list[_PendingRequest]] = field(default_factory=dict)
    _queues: dict[str, Mutex] = field(default_factory=dict)

    @staticmethod
    def generate_key(endpoint: str, params: dict[str, Any] | None = None) -> str:
        return f"{endpoint}:{json.dumps(params or {}, sort_keys=True, default=str)}"

    async def deduplicate_request(self, endpoint: str, params: dict[str, Any] | None, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` unless an identical request is already in flight, in which case share its result.

        Raises:
            CancellationError: if the request is aborted through ``abort_requests``.
        """
        key = self.generate_key(endpoint, params)
        live = self._pending.get(key, [])
        pending = live[-1] if live else None
        now = self.clock()

        if pending is not None and not pending.task.done() and now - pending.started_at < self.dedup_window:
            logger.debug(f"Deduplicating request: {key}")
        else:
            pending = _PendingRequest(task=asyncio.ensure_future(fn()), started_at=now)
            self._pending.setdefault(key, []).append(pending)
            pending.task.add_done_callback(lambda _task, k=key, p=pending: self._settle(k, p))

        try:
            return await asyncio.shield(pending.task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            caller_cancelled = current is not None and current.cancelling() > 0
            if pending.aborted and not caller_cancelled:
                raise CancellationError(f"Request aborted: {endpoint}") from None
            raise

    def _settle(self, key: str, pending: _PendingRequest) -> None:
        live = self._pending.get(key)
        if live is not None and pending in live:
            live.remove(pending)
            if not live:
                del self._pending[key]
        # Retrieve the exception so abandoned shared tasks do not warn on garbage collection
        if not pending.task.cancelled():
            pending.task.exception()

    def abort_requests(self, prefix: str | None = None) -> int:
        """Cancel every in-flight request whose key starts with ``prefix`` (all when None).

        Returns:
            Number of requests aborted.
        """
        aborted = 0
        for key in [k for k in self._pending if prefix is None or k.startswith(prefix)]:
            for pending in self._pending.pop(key):
                pending.aborted = True
                pending.task.cancel()
                aborted += 1
        if aborted:
            logger.info(f"Aborted {aborted} in-flight request(s) for prefix {prefix!r}")
        return aborted

    async def sequential_request(self, queue_name: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` after every earlier call on the same queue has settled, in arrival order."""
        queue = self._queues.get(queue_name)
        if queue is None:
            queue = self._queues[queue_name] = Mutex()
        return await queue.run_exclusive(fn)

    def get_pending_count(self) -> int:
        return sum(len(live) for live in self._pending.values())

    def reset(self) -> None:
        """Abort everything and forget all queues."""
        self.abort_requests()
        self._queues.clear()


_api_semaphore: Semaphore | None = None
_request_manager: RequestManager | None = None


def get_api_semaphore() -> Semaphore:
    """Get the process-wide semaphore bounding concurrent outbound calls."""
    global _api_semaphore
    if _api_semaphore is None:
        from .config import settings

        _api_semaphore = Semaphore(settings.research.max_concurrency or DEFAULT_API_CONCURRENCY)
    return _api_semaphore


def get_request_manager() -> RequestManager:
    """Get the process-wide request manager."""
    global _request_manager
    if _request_manager is None:
        from .config import settings

        _request_manager = RequestManager(dedup_window=settings.research.dedup_window)
    return _request_manager
