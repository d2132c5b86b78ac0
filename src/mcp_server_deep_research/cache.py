"""Research result cache with per-kind TTLs, LRU eviction and hit/miss analytics."""

import asyncio
import hashlib
import json
import logging
import re
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .exceptions import NonCacheableRequestError

if TYPE_CHECKING:
    from .cache_store import CacheStore
    from .config import CacheSettings

logger = logging.getLogger(__name__)


class CacheType(str, Enum):
    """Kinds of research results the cache stores. Also the research kind of a request."""

    COMPANY = "company-research"
    MARKET = "market-research"
    BULK_COMPANY = "bulk-company-research"
    FREE_FORM = "free-form-research"


DEFAULT_TTLS: dict[CacheType, float] = {
    CacheType.COMPANY: 24 * 60 * 60,
    CacheType.MARKET: 12 * 60 * 60,
    CacheType.BULK_COMPANY: 24 * 60 * 60,
    CacheType.FREE_FORM: 6 * 60 * 60,
}

KEY_PREFIXES: dict[CacheType, str] = {
    CacheType.COMPANY: "company",
    CacheType.MARKET: "market",
    CacheType.BULK_COMPANY: "bulk",
    CacheType.FREE_FORM: "freeform",
}

# Answers to these go stale within minutes
REALTIME_KEYWORDS = ("today", "now", "current", "latest", "real-time", "realtime", "live", "breaking")
_REALTIME_PATTERN = re.compile(r"\b(" + "|".join(re.escape(k) for k in REALTIME_KEYWORDS) + r")\b", re.IGNORECASE)

# Fields whose list values are sets: order and case carry no meaning
SET_FIELDS = frozenset({"competitors", "companies", "sub_industries", "research_sources"})

# Fields that name the subject of the research; empty means the request is not cacheable
SUBJECT_FIELDS: dict[CacheType, str] = {
    CacheType.COMPANY: "company_name",
    CacheType.MARKET: "query",
    CacheType.BULK_COMPANY: "companies",
    CacheType.FREE_FORM: "query",
}


@dataclass
class CacheEntry:
    """One cached research result."""

    key: str
    type: CacheType
    data: dict[str, Any]
    created_at: float
    expires_at: float
    ttl: float
    request_params: dict[str, Any] = field(default_factory=dict)
    hit_count: int = 0
    last_accessed_at: float = 0.0
    id: str = field(default_factory=lambda: uuid4().hex[:12])

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass
class CacheStats:
    """Running cache analytics."""

    total_hits: int = 0
    total_misses: int = 0
    total_entries: int = 0
    estimated_cost_savings: float = 0.0
    estimated_token_savings: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.total_hits + self.total_misses
        return self.total_hits / lookups if lookups else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "hit_rate": round(self.hit_rate, 4)}


# --- Key derivation ---


def _normalize_value(name: str, value: Any) -> Any:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, str):
        return " ".join(value.split()).lower()
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize_value(name, item) for item in value]
        items = [item for item in items if item not in (None, "", [], {})]
        if name in SET_FIELDS:
            return sorted(set(items), key=lambda item: json.dumps(item, sort_keys=True))
        return items
    if isinstance(value, dict):
        return _normalize_params(value)
    return value


def _normalize_params(params: dict[str, Any]) -> dict[str, Any]:
    normalized = {}
    for name, value in params.items():
        value = _normalize_value(name, value)
        if value in (None, "", [], {}):
            continue
        normalized[name] = value
    return normalized


def is_cacheable(kind: CacheType | str, params: dict[str, Any]) -> bool:
    """Whether a request of this kind and shape may be served from or written to the cache.

    Requests without a subject and free-form questions about real-time events are not cacheable.
    """
    kind = CacheType(kind)
    subject = _normalize_value(SUBJECT_FIELDS[kind], params.get(SUBJECT_FIELDS[kind]))
    if not subject:
        return False
    if kind is CacheType.FREE_FORM and _REALTIME_PATTERN.search(str(params.get("query", ""))):
        return False
    return True


def build_cache_key(kind: CacheType | str, params: dict[str, Any]) -> str:
    """Derive a content-addressed key from the research kind and its normalized parameters.

    Normalization: strings are whitespace-collapsed and lowercased, empty values are
    dropped, dict order is ignored, and set-like lists (competitors, companies, ...)
    are sorted and de-duplicated. Any other list keeps its order.

    Raises:
        NonCacheableRequestError: If the request shape must never be cached.
    """
    kind = CacheType(kind)
    if not is_cacheable(kind, params):
        raise NonCacheableRequestError(f"Request is not cacheable for {kind.value}")

    canonical = json.dumps(_normalize_params(params), sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:24]
    return f"{KEY_PREFIXES[kind]}:{digest}"


# --- Savings estimates ---

BASE_COSTS: dict[CacheType, float] = {
    CacheType.COMPANY: 0.15,
    CacheType.MARKET: 0.12,
    CacheType.BULK_COMPANY: 0.45,
    CacheType.FREE_FORM: 0.08,
}
BASE_TOKENS: dict[CacheType, int] = {
    CacheType.COMPANY: 15_000,
    CacheType.MARKET: 12_000,
    CacheType.BULK_COMPANY: 45_000,
    CacheType.FREE_FORM: 8_000,
}
DEPTH_COST_MULTIPLIERS = {"fast": 0.3, "medium": 1.0, "deep": 2.5}
PROVIDER_COST_MULTIPLIERS = {
    "openai": 1.0,
    "anthropic": 1.2,
    "google": 0.8,
    "deepseek": 0.3,
    "xai": 1.0,
    "mistral": 0.6,
    "groq": 0.4,
    "openrouter": 1.1,
}


def estimate_cost_savings(kind: CacheType, request_params: dict[str, Any]) -> float:
    """Rough dollars saved by serving one hit instead of re-running the research."""
    depth = DEPTH_COST_MULTIPLIERS.get(str(request_params.get("search_depth") or "medium"), 1.0)
    provider = PROVIDER_COST_MULTIPLIERS.get(str(request_params.get("provider_id") or ""), 1.0)
    cost = BASE_COSTS[kind] * depth * provider
    if kind is CacheType.BULK_COMPANY:
        cost *= max(1, len(request_params.get("companies") or []))
    return round(cost, 4)


def estimate_token_savings(kind: CacheType, request_params: dict[str, Any]) -> int:
    depth = DEPTH_COST_MULTIPLIERS.get(str(request_params.get("search_depth") or "medium"), 1.0)
    tokens = BASE_TOKENS[kind] * depth
    if kind is CacheType.BULK_COMPANY:
        tokens *= max(1, len(request_params.get("companies") or []))
    return int(tokens)


# --- Cache ---


class ResearchCache:
    """In-memory LRU cache of research payloads with optional write-through persistence.

    All mutation happens under one asyncio lock, so concurrent sessions see
    consistent entries and stats.
    """

    def __init__(
        self,
        max_entries: int = 500,
        ttls: dict[CacheType, float] | None = None,
        store: "CacheStore | None" = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_entries = max_entries
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self.store = store
        self.clock = clock
        self.stats = CacheStats()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()
        self._loaded = False

    @classmethod
    def from_settings(cls, cache_settings: "CacheSettings", store: "CacheStore | None" = None) -> "ResearchCache":
        return cls(
            max_entries=cache_settings.max_entries,
            ttls={
                CacheType.COMPANY: cache_settings.company_ttl,
                CacheType.MARKET: cache_settings.market_ttl,
                CacheType.BULK_COMPANY: cache_settings.bulk_ttl,
                CacheType.FREE_FORM: cache_settings.free_form_ttl,
            },
            store=store,
        )

    def get_ttl(self, kind: CacheType) -> float:
        return self.ttls[kind]

    def is_expired(self, entry: CacheEntry) -> bool:
        return self.clock() > entry.expires_at

    def __len__(self) -> int:
        return len(self._entries)

    async def load(self) -> int:
        """Populate from the persistent store, dropping rows that already expired."""
        if self.store is None or self._loaded:
            return 0
        async with self._lock:
            entries = await self.store.load_all()
            expired = [entry.key for entry in entries if self.is_expired(entry)]
            live = sorted((e for e in entries if not self.is_expired(e)), key=lambda e: e.last_accessed_at)
            for entry in live[-self.max_entries :]:
                self._entries[entry.key] = entry
            for key in expired:
                await self.store.delete(key)
            self.stats.total_entries = len(self._entries)
            self._loaded = True
        logger.info(f"Loaded {len(self._entries)} cache entries ({len(expired)} expired rows dropped)")
        return len(self._entries)

    async def get(self, key: str) -> CacheEntry | None:
        """Return the live entry for ``key`` or None. Expired entries are removed and count as misses."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._record_miss()
                return None
            if self.is_expired(entry):
                await self._delete(key)
                self._record_miss()
                return None
            self._record_hit(entry)
            if self.store is not None:
                await self.store.save(entry)
            return entry

    async def set(
        self,
        key: str,
        data: dict[str, Any],
        kind: CacheType,
        ttl: float | None = None,
        request_params: dict[str, Any] | None = None,
    ) -> CacheEntry:
        """Store ``data`` under ``key``. Inserting a new key into a full cache evicts the least recently used entry."""
        kind = CacheType(kind)
        ttl = self.ttls[kind] if ttl is None else ttl
        now = self.clock()
        entry = CacheEntry(
            key=key,
            type=kind,
            data=data,
            created_at=now,
            expires_at=now + ttl,
            ttl=ttl,
            request_params=request_params or {},
            last_accessed_at=now,
        )
        async with self._lock:
            if key in self._entries:
                del self._entries[key]
            else:
                while len(self._entries) >= self.max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    logger.debug(f"Evicted least recently used cache entry {evicted}")
                    if self.store is not None:
                        await self.store.delete(evicted)
            self._entries[key] = entry
            self.stats.total_entries = len(self._entries)
            if self.store is not None:
                await self.store.save(entry)
        return entry

    async def remove(self, key: str) -> bool:
        async with self._lock:
            if key not in self._entries:
                return False
            await self._delete(key)
            return True

    async def clear(self, kind: CacheType | None = None) -> int:
        """Drop all entries, or only those of one kind. Returns the number removed."""
        async with self._lock:
            keys = [key for key, entry in self._entries.items() if kind is None or entry.type is kind]
            for key in keys:
                del self._entries[key]
            if self.store is not None:
                await self.store.clear(kind)
            self.stats.total_entries = len(self._entries)
        return len(keys)

    async def cleanup(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        async with self._lock:
            expired = [key for key, entry in self._entries.items() if self.is_expired(entry)]
            for key in expired:
                await self._delete(key)
        if expired:
            logger.info(f"Cache cleanup removed {len(expired)} expired entries")
        return len(expired)

    async def prune(self, target: int | None = None) -> int:
        """Evict least recently used entries until at most ``target`` (default max_entries) remain."""
        target = self.max_entries if target is None else target
        removed = 0
        async with self._lock:
            while len(self._entries) > target:
                key, _ = self._entries.popitem(last=False)
                if self.store is not None:
                    await self.store.delete(key)
                removed += 1
            self.stats.total_entries = len(self._entries)
        return removed

    def info(self) -> dict[str, Any]:
        by_type: dict[str, int] = {}
        for entry in self._entries.values():
            by_type[entry.type.value] = by_type.get(entry.type.value, 0) + 1
        return {
            "stats": self.stats.to_dict(),
            "max_entries": self.max_entries,
            "entries_by_type": by_type,
            "ttls": {kind.value: ttl for kind, ttl in self.ttls.items()},
            "persistent": self.store is not None,
        }

    async def run_cleanup_loop(self, interval: float) -> None:
        """Sweep expired entries every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            await self.cleanup()

    # Callers hold self._lock

    async def _delete(self, key: str) -> None:
        del self._entries[key]
        self.stats.total_entries = len(self._entries)
        if self.store is not None:
            await self.store.delete(key)

    def _record_hit(self, entry: CacheEntry) -> None:
        entry.hit_count += 1
        entry.last_accessed_at = self.clock()
        self._entries.move_to_end(entry.key)
        self.stats.total_hits += 1
        self.stats.estimated_cost_savings = round(
            self.stats.estimated_cost_savings + estimate_cost_savings(entry.type, entry.request_params), 4
        )
        self.stats.estimated_token_savings += estimate_token_savings(entry.type, entry.request_params)

    def _record_miss(self) -> None:
        self.stats.total_misses += 1


_cache: ResearchCache | None = None


def get_research_cache() -> ResearchCache:
    """Get the process-wide research cache built from settings."""
    global _cache
    if _cache is None:
        from .config import settings

        store = None
        if settings.cache.persist:
            from .cache_store import CacheStore

            store = CacheStore(settings.get_cache_db_path())
        _cache = ResearchCache.from_settings(settings.cache, store=store)
    return _cache
