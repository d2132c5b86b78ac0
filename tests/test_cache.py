"""Tests for cache keys, TTL, LRU eviction, analytics and SQLite persistence."""

import pytest

from mcp_server_deep_research.cache import (
    CacheType,
    ResearchCache,
    build_cache_key,
    estimate_cost_savings,
    is_cacheable,
)
from mcp_server_deep_research.cache_store import CacheStore
from mcp_server_deep_research.exceptions import NonCacheableRequestError


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def company_params(**overrides):
    params = {"company_name": "Acme Corp", "search_depth": "fast", "competitors": ["Globex", "Initech"], "provider_id": "openai"}
    params.update(overrides)
    return params


class TestBuildCacheKey:
    """Test cache key derivation."""

    def test_key_has_kind_prefix(self):
        """Keys are namespaced by research kind."""
        assert build_cache_key(CacheType.COMPANY, company_params()).startswith("company:")
        assert build_cache_key(CacheType.MARKET, {"query": "EV batteries"}).startswith("market:")
        assert build_cache_key(CacheType.BULK_COMPANY, {"companies": ["a"]}).startswith("bulk:")
        assert build_cache_key(CacheType.FREE_FORM, {"query": "why is the sky blue"}).startswith("freeform:")

    def test_key_is_deterministic(self):
        """Same parameters give the same key."""
        assert build_cache_key(CacheType.COMPANY, company_params()) == build_cache_key(CacheType.COMPANY, company_params())

    def test_dict_order_does_not_matter(self):
        """Parameter order is irrelevant."""
        params = company_params()
        reordered = dict(reversed(list(params.items())))
        assert build_cache_key(CacheType.COMPANY, params) == build_cache_key(CacheType.COMPANY, reordered)

    def test_case_and_whitespace_are_normalized(self):
        """Strings are lowercased and whitespace-collapsed."""
        assert build_cache_key(CacheType.COMPANY, company_params(company_name="  ACME   corp ")) == build_cache_key(
            CacheType.COMPANY, company_params()
        )

    def test_competitor_order_and_case_do_not_matter(self):
        """Set-like lists are compared as sets."""
        a = build_cache_key(CacheType.COMPANY, company_params(competitors=["Globex", "Initech"]))
        b = build_cache_key(CacheType.COMPANY, company_params(competitors=["initech", "GLOBEX", "Globex"]))
        assert a == b

    def test_empty_values_are_ignored(self):
        """None and empty strings do not change the key."""
        assert build_cache_key(CacheType.COMPANY, company_params(industry=None, language="")) == build_cache_key(
            CacheType.COMPANY, company_params()
        )

    def test_different_params_give_different_keys(self):
        """Depth and provider are part of the key."""
        base = build_cache_key(CacheType.COMPANY, company_params())
        assert base != build_cache_key(CacheType.COMPANY, company_params(search_depth="deep"))
        assert base != build_cache_key(CacheType.COMPANY, company_params(provider_id="anthropic"))

    def test_kind_is_part_of_the_key(self):
        """The same query under two kinds yields two keys."""
        assert build_cache_key(CacheType.MARKET, {"query": "ev"}) != build_cache_key(CacheType.FREE_FORM, {"query": "ev"})

    def test_missing_subject_is_not_cacheable(self):
        """A company request without a name cannot be cached."""
        assert not is_cacheable(CacheType.COMPANY, {"search_depth": "fast"})
        with pytest.raises(NonCacheableRequestError):
            build_cache_key(CacheType.COMPANY, {"search_depth": "fast"})

    @pytest.mark.parametrize("query", ["latest AI news", "What is the stock price today", "breaking news on Acme", "live scores"])
    def test_realtime_free_form_queries_are_not_cacheable(self, query):
        """Questions about the present are never cached."""
        assert not is_cacheable(CacheType.FREE_FORM, {"query": query})

    def test_realtime_words_inside_other_words_are_fine(self):
        """Word boundaries apply: 'nowhere' is not 'now'."""
        assert is_cacheable(CacheType.FREE_FORM, {"query": "history of nowhere towns"})


class TestResearchCache:
    """Test the in-memory cache."""

    async def test_miss_then_hit(self):
        """A stored entry is returned and counted as a hit."""
        cache = ResearchCache()
        assert await cache.get("company:x") is None
        await cache.set("company:x", {"report": "r"}, kind=CacheType.COMPANY, request_params=company_params())
        entry = await cache.get("company:x")
        assert entry is not None
        assert entry.data == {"report": "r"}
        assert entry.hit_count == 1
        assert cache.stats.total_hits == 1
        assert cache.stats.total_misses == 1
        assert cache.stats.hit_rate == 0.5

    async def test_expired_entry_is_a_miss_and_removed(self):
        """Reading past expiry returns None and deletes the entry."""
        clock = FakeClock()
        cache = ResearchCache(clock=clock)
        await cache.set("k", {"report": "r"}, kind=CacheType.FREE_FORM, ttl=60)
        clock.now += 61
        assert await cache.get("k") is None
        assert len(cache) == 0
        assert cache.stats.total_misses == 1

    async def test_entry_is_live_until_ttl(self):
        """Just before the deadline the entry still serves."""
        clock = FakeClock()
        cache = ResearchCache(clock=clock)
        await cache.set("k", {}, kind=CacheType.MARKET, ttl=60)
        clock.now += 59
        assert await cache.get("k") is not None

    async def test_entry_at_exact_deadline_still_serves(self):
        """An entry expires only once the clock is past expires_at."""
        clock = FakeClock()
        cache = ResearchCache(clock=clock)
        entry = await cache.set("k", {"report": "r"}, kind=CacheType.COMPANY, ttl=60)

        clock.now = entry.expires_at
        assert not cache.is_expired(entry)
        assert await cache.get("k") is not None
        assert cache.stats.total_misses == 0

        clock.now = entry.expires_at + 0.001
        assert cache.is_expired(entry)
        assert await cache.get("k") is None
        assert cache.stats.total_misses == 1

    async def test_default_ttl_comes_from_kind(self):
        """Without an explicit ttl the per-kind default applies."""
        cache = ResearchCache(ttls={CacheType.MARKET: 42})
        entry = await cache.set("k", {}, kind=CacheType.MARKET)
        assert entry.ttl == 42
        assert cache.get_ttl(CacheType.COMPANY) == 24 * 60 * 60

    async def test_lru_eviction_when_full(self):
        """Inserting into a full cache evicts the least recently used entry."""
        cache = ResearchCache(max_entries=2)
        await cache.set("a", {}, kind=CacheType.FREE_FORM)
        await cache.set("b", {}, kind=CacheType.FREE_FORM)
        await cache.get("a")
        await cache.set("c", {}, kind=CacheType.FREE_FORM)
        assert len(cache) == 2
        assert await cache.get("b") is None
        assert await cache.get("a") is not None

    async def test_updating_existing_key_does_not_evict(self):
        """Overwriting a key keeps the other entries."""
        cache = ResearchCache(max_entries=2)
        await cache.set("a", {"v": 1}, kind=CacheType.FREE_FORM)
        await cache.set("b", {}, kind=CacheType.FREE_FORM)
        await cache.set("a", {"v": 2}, kind=CacheType.FREE_FORM)
        assert len(cache) == 2
        assert (await cache.get("a")).data == {"v": 2}

    async def test_clear_by_kind(self):
        """clear(kind) only drops that kind."""
        cache = ResearchCache()
        await cache.set("a", {}, kind=CacheType.COMPANY)
        await cache.set("b", {}, kind=CacheType.MARKET)
        assert await cache.clear(CacheType.COMPANY) == 1
        assert len(cache) == 1
        assert await cache.clear() == 1
        assert len(cache) == 0

    async def test_cleanup_removes_only_expired(self):
        """cleanup() sweeps expired entries."""
        clock = FakeClock()
        cache = ResearchCache(clock=clock)
        await cache.set("short", {}, kind=CacheType.FREE_FORM, ttl=10)
        await cache.set("long", {}, kind=CacheType.FREE_FORM, ttl=1000)
        clock.now += 20
        assert await cache.cleanup() == 1
        assert len(cache) == 1

    async def test_prune_to_target(self):
        """prune() evicts oldest entries down to the target."""
        cache = ResearchCache()
        for key in "abcde":
            await cache.set(key, {}, kind=CacheType.FREE_FORM)
        assert await cache.prune(2) == 3
        assert len(cache) == 2
        assert await cache.remove("e")
        assert not await cache.remove("a")

    async def test_hits_accumulate_savings(self):
        """Each hit adds its estimated savings."""
        cache = ResearchCache()
        params = company_params(search_depth="medium", provider_id="openai")
        await cache.set("k", {}, kind=CacheType.COMPANY, request_params=params)
        await cache.get("k")
        await cache.get("k")
        assert cache.stats.estimated_cost_savings == pytest.approx(2 * estimate_cost_savings(CacheType.COMPANY, params))
        assert cache.stats.estimated_token_savings == 30_000

    async def test_info_reports_entries_by_type(self):
        """info() summarizes the cache."""
        cache = ResearchCache()
        await cache.set("a", {}, kind=CacheType.COMPANY)
        info = cache.info()
        assert info["entries_by_type"] == {"company-research": 1}
        assert info["persistent"] is False
        assert info["stats"]["total_entries"] == 1


class TestSavingsEstimates:
    """Test cost estimates."""

    def test_deep_costs_more_than_fast(self):
        """Depth scales the estimate."""
        fast = estimate_cost_savings(CacheType.COMPANY, {"search_depth": "fast"})
        deep = estimate_cost_savings(CacheType.COMPANY, {"search_depth": "deep"})
        assert deep > fast

    def test_bulk_scales_with_company_count(self):
        """Bulk estimates multiply by the number of companies."""
        one = estimate_cost_savings(CacheType.BULK_COMPANY, {"companies": ["a"]})
        three = estimate_cost_savings(CacheType.BULK_COMPANY, {"companies": ["a", "b", "c"]})
        assert three == pytest.approx(one * 3)


class TestCacheStore:
    """Test SQLite persistence."""

    async def test_entries_survive_a_restart(self, tmp_path):
        """A new cache over the same database sees earlier entries."""
        db_path = tmp_path / "cache.db"
        first = ResearchCache(store=CacheStore(db_path))
        await first.set("company:x", {"report": "saved"}, kind=CacheType.COMPANY, request_params={"company_name": "x"})

        second = ResearchCache(store=CacheStore(db_path))
        assert await second.load() == 1
        entry = await second.get("company:x")
        assert entry.data == {"report": "saved"}
        assert entry.request_params == {"company_name": "x"}

    async def test_expired_rows_are_dropped_on_load(self, tmp_path):
        """Rows that expired while offline are not loaded and are deleted."""
        db_path = tmp_path / "cache.db"
        clock = FakeClock()
        first = ResearchCache(store=CacheStore(db_path), clock=clock)
        await first.set("old", {}, kind=CacheType.FREE_FORM, ttl=10)
        await first.set("fresh", {}, kind=CacheType.FREE_FORM, ttl=1000)

        later = FakeClock(clock.now + 100)
        store = CacheStore(db_path)
        second = ResearchCache(store=store, clock=later)
        assert await second.load() == 1
        assert [entry.key for entry in await store.load_all()] == ["fresh"]

    async def test_clear_reaches_the_store(self, tmp_path):
        """Clearing the cache clears persisted rows."""
        store = CacheStore(tmp_path / "cache.db")
        cache = ResearchCache(store=store)
        await cache.set("a", {}, kind=CacheType.COMPANY)
        await cache.set("b", {}, kind=CacheType.MARKET)
        await cache.clear(CacheType.COMPANY)
        assert [entry.key for entry in await store.load_all()] == ["b"]
