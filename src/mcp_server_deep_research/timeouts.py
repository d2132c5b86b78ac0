"""Time budgets and retry policy per search depth and per model."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import TypeVar

from .exceptions import CancellationError, ConfigurationError, NonCacheableRequestError, ResearchTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SearchDepth(str, Enum):
    """Research depth tier. Deeper tiers get more time, more rounds and fewer retries."""

    FAST = "fast"
    MEDIUM = "medium"
    DEEP = "deep"


@dataclass(frozen=True)
class DepthPolicy:
    """Budgets for one depth tier. Durations are in seconds."""

    depth: SearchDepth
    session_timeout: float
    max_rounds: int
    max_queries: int
    max_results: int
    max_retries: int
    max_sources: int
    max_images: int
    search_timeout: float = 30.0
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 10.0


DEPTH_POLICIES: dict[SearchDepth, DepthPolicy] = {
    SearchDepth.FAST: DepthPolicy(
        depth=SearchDepth.FAST,
        session_timeout=180.0,
        max_rounds=1,
        max_queries=3,
        max_results=3,
        max_retries=2,
        max_sources=15,
        max_images=5,
    ),
    SearchDepth.MEDIUM: DepthPolicy(
        depth=SearchDepth.MEDIUM,
        session_timeout=300.0,
        max_rounds=2,
        max_queries=10,
        max_results=5,
        max_retries=1,
        max_sources=30,
        max_images=10,
    ),
    SearchDepth.DEEP: DepthPolicy(
        depth=SearchDepth.DEEP,
        session_timeout=600.0,
        max_rounds=3,
        max_queries=30,
        max_results=10,
        max_retries=1,
        max_sources=50,
        max_images=20,
    ),
}


def get_depth_policy(depth: SearchDepth | str, session_timeout: float | None = None) -> DepthPolicy:
    """Look up the policy for a depth tier, optionally overriding the session budget.

    Raises:
        ConfigurationError: If the depth is not a known tier.
    """
    try:
        policy = DEPTH_POLICIES[SearchDepth(depth)]
    except ValueError as e:
        raise ConfigurationError(f"Unknown search depth: {depth}") from e
    if session_timeout is not None:
        policy = replace(policy, session_timeout=session_timeout)
    return policy


# --- Per-model budgets ---


@dataclass(frozen=True)
class ModelTimeouts:
    """Per-call budgets for one model, in seconds."""

    thinking: float
    task: float
    search: float
    total: float

    def scaled(self, factor: float) -> "ModelTimeouts":
        return ModelTimeouts(
            thinking=self.thinking * factor,
            task=self.task * factor,
            search=self.search * factor,
            total=self.total * factor,
        )


DEFAULT_MODEL_TIMEOUTS = ModelTimeouts(thinking=90.0, task=60.0, search=30.0, total=240.0)

# Keyed by model id prefix; the longest matching prefix wins
MODEL_TIMEOUTS: dict[str, ModelTimeouts] = {
    "o1": ModelTimeouts(thinking=180.0, task=120.0, search=30.0, total=480.0),
    "o3": ModelTimeouts(thinking=180.0, task=120.0, search=30.0, total=480.0),
    "o4-mini": ModelTimeouts(thinking=120.0, task=90.0, search=30.0, total=360.0),
    "gpt-5": ModelTimeouts(thinking=150.0, task=90.0, search=30.0, total=420.0),
    "gpt-4.1": ModelTimeouts(thinking=90.0, task=60.0, search=30.0, total=240.0),
    "gpt-4o": ModelTimeouts(thinking=90.0, task=60.0, search=30.0, total=240.0),
    "gpt-4o-mini": ModelTimeouts(thinking=60.0, task=45.0, search=30.0, total=180.0),
    "claude-opus": ModelTimeouts(thinking=150.0, task=90.0, search=30.0, total=420.0),
    "claude-sonnet": ModelTimeouts(thinking=120.0, task=75.0, search=30.0, total=300.0),
    "claude-3-5-haiku": ModelTimeouts(thinking=60.0, task=45.0, search=30.0, total=180.0),
    "gemini-2.5-pro": ModelTimeouts(thinking=150.0, task=90.0, search=30.0, total=420.0),
    "gemini-2.5-flash": ModelTimeouts(thinking=90.0, task=60.0, search=30.0, total=240.0),
    "deepseek-reasoner": ModelTimeouts(thinking=180.0, task=120.0, search=30.0, total=480.0),
    "grok": ModelTimeouts(thinking=120.0, task=75.0, search=30.0, total=300.0),
}

PROVIDER_MULTIPLIERS: dict[str, float] = {
    "openai": 1.0,
    "azure_openai": 1.0,
    "anthropic": 1.2,
    "google": 1.0,
    "deepseek": 1.3,
    "xai": 1.1,
    "mistral": 1.0,
    "openrouter": 1.2,
    "groq": 0.5,
    "cerebras": 0.5,
    "ollama": 1.5,
    "bedrock": 1.2,
}


def get_timeout_config(model: str, provider: str | None = None) -> ModelTimeouts:
    """Resolve per-call budgets for a model, scaled by the provider multiplier."""
    normalized = model.lower()
    if "/" in normalized:
        normalized = normalized.rsplit("/", 1)[1]

    timeouts = DEFAULT_MODEL_TIMEOUTS
    matches = [prefix for prefix in MODEL_TIMEOUTS if normalized.startswith(prefix)]
    if matches:
        timeouts = MODEL_TIMEOUTS[max(matches, key=len)]

    multiplier = PROVIDER_MULTIPLIERS.get(provider or "", 1.0)
    return timeouts.scaled(multiplier) if multiplier != 1.0 else timeouts


# --- Timeout and retry combinators ---


async def with_timeout(operation: Awaitable[T], seconds: float, message: str | None = None) -> T:
    """Await ``operation`` but fail with ResearchTimeoutError after ``seconds``.

    Work already committed by the operation is not rolled back. Callers that apply
    results must check they still want them.
    """
    try:
        async with asyncio.timeout(seconds):
            return await operation
    except TimeoutError as e:
        if isinstance(e, ResearchTimeoutError):
            raise
        raise ResearchTimeoutError(message or f"Operation timed out after {seconds:g}s") from e


def is_retryable(error: BaseException) -> bool:
    """Configuration problems and aborts never get better by retrying."""
    return not isinstance(error, (ConfigurationError, CancellationError, NonCacheableRequestError))


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    jitter: bool = False,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation: str = "operation",
) -> T:
    """Call ``fn`` up to ``max_retries + 1`` times.

    The delay before retry ``n`` (0-based) is ``initial_delay * 2**n`` capped at
    ``max_delay``. The last failure is re-raised unchanged.

    Args:
        fn: Zero-argument coroutine factory. Called once per attempt.
        max_retries: Additional attempts after the first.
        initial_delay: Delay before the first retry in seconds.
        max_delay: Upper bound on any single delay.
        jitter: Randomize each delay between 50% and 100% of its value.
        retryable: Predicate deciding whether an error deserves another attempt.
        sleep_func: Injectable sleep for tests.
        operation: Label used in log lines.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= max_retries or not retryable(e):
                raise
            delay = min(initial_delay * (2**attempt), max_delay)
            if jitter:
                delay *= 0.5 + random.random() / 2
            logger.warning(f"{operation} failed (attempt {attempt + 1}/{max_retries + 1}): {e}. Retrying in {delay:.2f}s")
            attempt += 1
            await sleep_func(delay)
