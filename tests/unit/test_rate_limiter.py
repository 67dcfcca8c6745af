"""
Unit Tests for Rate Limiting

Tests for window counters, counter stores, tiers and admission control.
"""

import asyncio
from datetime import timedelta

import pytest

from amoeba_core.ratelimit import (
    DEFAULT_TIERS,
    AdmissionController,
    InMemoryRateLimitStore,
    RateLimiter,
    RateLimitExceeded,
    RateLimitResponse,
    RateLimitTier,
    RedisRateLimitStore,
    address_key,
    credential_key,
    default_key,
)


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


class FakeRedis:
    """Minimal async Redis double that evaluates the hit script's contract."""

    def __init__(self, clock):
        self.clock = clock
        self.counters = {}
        self.scripts = {}
        self.evals = []
        self.closed = False

    async def script_load(self, script):
        sha = f"sha{len(self.scripts)}"
        self.scripts[sha] = script
        return sha

    async def evalsha(self, sha, numkeys, key, window_ms):
        self.evals.append((sha, numkeys, key, window_ms))
        window = timedelta(milliseconds=int(window_ms))
        count, expires_at = self.counters.get(key, (0, None))
        if expires_at is not None and expires_at <= self.clock.now:
            count, expires_at = 0, None
        count += 1
        if expires_at is None:
            expires_at = self.clock.now + window
        self.counters[key] = (count, expires_at)
        ttl = int((expires_at - self.clock.now).total_seconds() * 1000)
        return [count, ttl]

    async def delete(self, *keys):
        for key in keys:
            self.counters.pop(key, None)
        return len(keys)

    async def scan_iter(self, match=None):
        prefix = (match or "*").rstrip("*")
        for key in list(self.counters):
            if key.startswith(prefix):
                yield key

    async def aclose(self):
        self.closed = True


# =============================================================================
# Limiter Tests
# =============================================================================


class TestRateLimiter:
    """Tests for the window counter."""

    @pytest.mark.asyncio
    async def test_sixth_call_in_window_denied(self, limiter):
        """maxRequests=5, windowMs=60000: five allowed, the sixth denied."""
        results = [await limiter.allow("client", 60000, 5) for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0, 0]

    @pytest.mark.asyncio
    async def test_denied_result_carries_retry_after(self, limiter, clock):
        for _ in range(5):
            await limiter.allow("client", 60000, 5)
        clock.advance(15.5)

        denied = await limiter.allow("client", 60000, 5)

        assert denied.allowed is False
        assert denied.retry_after == 45
        assert denied.reset_at == clock.now + timedelta(seconds=44.5)

    @pytest.mark.asyncio
    async def test_window_restarts_after_reset(self, limiter, clock):
        """A call after reset_at succeeds and restarts the count at 1."""
        for _ in range(6):
            await limiter.allow("client", 60000, 5)
        clock.advance(61)

        result = await limiter.allow("client", 60000, 5)

        assert result.allowed is True
        assert result.current == 1
        assert result.remaining == 4
        assert result.reset_at == clock.now + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_window_does_not_slide_on_hits(self, limiter, clock):
        first = await limiter.allow("client", 60000, 5)
        clock.advance(30)

        second = await limiter.allow("client", 60000, 5)

        assert second.reset_at == first.reset_at
        assert second.current == 2

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter):
        for _ in range(5):
            await limiter.allow("a", 60000, 5)

        assert (await limiter.allow("a", 60000, 5)).allowed is False
        assert (await limiter.allow("b", 60000, 5)).allowed is True

    @pytest.mark.asyncio
    async def test_concurrent_checks_respect_limit(self, limiter):
        results = await asyncio.gather(*(limiter.allow("burst", 60000, 10) for _ in range(25)))

        assert sum(r.allowed for r in results) == 10

    @pytest.mark.asyncio
    async def test_acquire_raises_when_denied(self, limiter):
        await limiter.acquire("client", 60000, 1)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.acquire("client", 60000, 1)

        assert exc_info.value.limit == 1
        assert exc_info.value.remaining == 0
        assert exc_info.value.retry_after == 60

    @pytest.mark.asyncio
    async def test_reset_key(self, limiter):
        await limiter.allow("client", 60000, 1)
        await limiter.reset("client")

        assert (await limiter.allow("client", 60000, 1)).allowed is True

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, limiter):
        with pytest.raises(ValueError):
            await limiter.allow("client", 0, 5)
        with pytest.raises(ValueError):
            await limiter.allow("client", 60000, 0)

    @pytest.mark.asyncio
    async def test_headers(self, limiter):
        allowed = await limiter.allow("client", 60000, 1)
        denied = await limiter.allow("client", 60000, 1)

        assert allowed.headers == {
            "X-RateLimit-Limit": "1",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": allowed.reset_at.isoformat(),
        }
        assert denied.headers["Retry-After"] == "60"


# =============================================================================
# Cleanup Tests
# =============================================================================


class TestCleanup:
    """Tests for expired-entry purging and lifecycle."""

    @pytest.mark.asyncio
    async def test_purge_expired(self, limiter, clock):
        await limiter.allow("old", 1000, 5)
        clock.advance(30)
        await limiter.allow("fresh", 60000, 5)
        clock.advance(1)

        purged = await limiter.purge_expired()

        assert purged == 1
        assert await limiter.store.size() == 1
        assert [e.key for e in limiter.store.entries()] == ["fresh"]

    @pytest.mark.asyncio
    async def test_stop_releases_timer_and_entries(self, clock):
        limiter = RateLimiter(cleanup_interval=3600, clock=clock)
        await limiter.start()
        await limiter.allow("client", 60000, 5)

        assert limiter.is_running is True

        await limiter.stop()

        assert limiter.is_running is False
        assert await limiter.store.size() == 0

    @pytest.mark.asyncio
    async def test_cleanup_loop_purges_periodically(self, clock):
        limiter = RateLimiter(cleanup_interval=0.01, clock=clock)
        await limiter.allow("client", 1000, 5)
        clock.advance(5)

        await limiter.start()
        await asyncio.sleep(0.05)
        size = await limiter.store.size()
        await limiter.stop()

        assert size == 0

    @pytest.mark.asyncio
    async def test_instances_are_isolated(self, clock):
        first = RateLimiter(clock=clock)
        second = RateLimiter(clock=clock)

        await first.allow("client", 60000, 1)

        assert (await second.allow("client", 60000, 1)).allowed is True


# =============================================================================
# Redis Store Tests
# =============================================================================


class TestRedisStore:
    """Tests for the shared-counter store against a fake client."""

    @pytest.mark.asyncio
    async def test_hit_uses_single_script(self, clock):
        fake = FakeRedis(clock)
        store = RedisRateLimitStore(client=fake, key_prefix="rl:")

        entry = await store.hit("client", 60000, clock.now)
        await store.hit("client", 60000, clock.now)

        assert entry.count == 1
        assert entry.reset_at == clock.now + timedelta(seconds=60)
        assert len(fake.scripts) == 1
        assert "INCR" in next(iter(fake.scripts.values()))
        assert fake.evals[0] == ("sha0", 1, "rl:client", "60000")

    @pytest.mark.asyncio
    async def test_limiter_over_redis(self, clock):
        limiter = RateLimiter(store=RedisRateLimitStore(client=FakeRedis(clock)), clock=clock)

        results = [await limiter.allow("client", 60000, 5) for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert results[-1].retry_after == 60

    @pytest.mark.asyncio
    async def test_reset_size_and_clear(self, clock):
        store = RedisRateLimitStore(client=FakeRedis(clock))
        await store.hit("a", 60000, clock.now)
        await store.hit("b", 60000, clock.now)

        assert await store.size() == 2
        await store.reset("a")
        assert await store.size() == 1
        assert await store.purge_expired(clock.now) == 0
        await store.clear()
        assert await store.size() == 0

    @pytest.mark.asyncio
    async def test_stopping_one_instance_keeps_shared_budget(self, clock):
        """A replica shutting down never resets the counters other replicas use."""
        fake = FakeRedis(clock)
        first = RateLimiter(store=RedisRateLimitStore(client=fake), clock=clock)
        second = RateLimiter(store=RedisRateLimitStore(client=fake), clock=clock)
        await second.start()

        results = [await first.allow("client", 60000, 5) for _ in range(6)]
        await second.stop()
        after = await first.allow("client", 60000, 5)

        assert results[-1].allowed is False
        assert after.allowed is False
        assert after.current == 7
        assert "ratelimit:client" in fake.counters

    @pytest.mark.asyncio
    async def test_stop_closes_owned_client_only(self, clock):
        owned, shared = FakeRedis(clock), FakeRedis(clock)
        owned_limiter = RateLimiter(
            store=RedisRateLimitStore(client=owned, owns_client=True), clock=clock,
        )
        shared_limiter = RateLimiter(store=RedisRateLimitStore(client=shared), clock=clock)
        await owned_limiter.allow("client", 60000, 5)

        await owned_limiter.stop()
        await shared_limiter.stop()

        assert owned.closed is True
        assert shared.closed is False
        assert owned.counters != {}


# =============================================================================
# Key Strategy Tests
# =============================================================================


class TestKeyStrategies:
    """Tests for caller identity keys."""

    def test_default_key(self):
        assert default_key({"ip": "1.2.3.4", "user_id": "u1"}) == "1.2.3.4:u1"
        assert default_key({"ip": "1.2.3.4"}) == "1.2.3.4:anonymous"
        assert default_key({}) == "unknown:anonymous"

    def test_address_key(self):
        assert address_key({"ip": "1.2.3.4", "user_id": "u1"}) == "1.2.3.4"
        assert address_key({"client_ip": "5.6.7.8"}) == "5.6.7.8"

    def test_credential_key(self):
        assert credential_key({"api_key": "k1", "ip": "1.2.3.4"}) == "apikey:k1"
        assert credential_key({"ip": "1.2.3.4"}) == "1.2.3.4:anonymous"


# =============================================================================
# Admission Control Tests
# =============================================================================


class TestAdmissionController:
    """Tests for tiered admission."""

    def test_default_tiers(self):
        budgets = {name: tier.max_requests for name, tier in DEFAULT_TIERS.items()}

        assert budgets == {
            "strict": 5,
            "standard": 60,
            "generous": 120,
            "public": 30,
            "ai_generation": 10,
        }
        assert all(tier.window_ms == 60000 for tier in DEFAULT_TIERS.values())

    @pytest.mark.asyncio
    async def test_strict_tier(self, limiter):
        admission = AdmissionController(limiter)
        context = {"ip": "1.2.3.4", "user_id": "u1"}

        results = [await admission.check("strict", context) for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]

    @pytest.mark.asyncio
    async def test_public_tier_keys_by_address_only(self, limiter):
        admission = AdmissionController(limiter)
        admission.add_tier(RateLimitTier(name="public", max_requests=1, key_func=address_key))

        await admission.check("public", {"ip": "1.2.3.4", "user_id": "u1"})
        result = await admission.check("public", {"ip": "1.2.3.4", "user_id": "u2"})

        assert result.allowed is False

    @pytest.mark.asyncio
    async def test_tiers_do_not_share_budgets(self, limiter):
        admission = AdmissionController(limiter)
        context = {"ip": "1.2.3.4"}
        for _ in range(5):
            await admission.check("strict", context)

        assert (await admission.check("strict", context)).allowed is False
        assert (await admission.check("standard", context)).allowed is True

    @pytest.mark.asyncio
    async def test_admit_raises_with_tier_message(self, limiter):
        tier = RateLimitTier(name="once", max_requests=1, message="Slow down")
        admission = AdmissionController(limiter, tiers=[tier])

        await admission.admit("once", {"ip": "1.2.3.4"})
        with pytest.raises(RateLimitExceeded) as exc_info:
            await admission.admit("once", {"ip": "1.2.3.4"})

        assert str(exc_info.value) == "Slow down"
        assert exc_info.value.retry_after == 60

    @pytest.mark.asyncio
    async def test_custom_key_function(self, limiter):
        tier = RateLimitTier(name="per_credential", max_requests=1, key_func=credential_key)
        admission = AdmissionController(limiter, tiers=[tier])

        await admission.check("per_credential", {"ip": "1.2.3.4", "api_key": "k1"})

        assert (await admission.check("per_credential", {"ip": "9.9.9.9", "api_key": "k1"})).allowed is False
        assert (await admission.check("per_credential", {"ip": "1.2.3.4", "api_key": "k2"})).allowed is True

    @pytest.mark.asyncio
    async def test_unknown_tier(self, limiter):
        with pytest.raises(KeyError):
            await AdmissionController(limiter).check("platinum", {})

    @pytest.mark.asyncio
    async def test_response_from_denied_result(self, limiter):
        await limiter.allow("client", 60000, 1)
        denied = await limiter.allow("client", 60000, 1)

        response = RateLimitResponse.from_result(denied, "Too many requests")

        assert response.status_code == 429
        assert response.body == {"error": "Too many requests", "retry_after": 60}
        assert response.headers["Retry-After"] == "60"


class TestInMemoryStore:
    """Tests for the in-process counter store."""

    @pytest.mark.asyncio
    async def test_hit_returns_copy(self, clock):
        store = InMemoryRateLimitStore()
        entry = await store.hit("k", 60000, clock.now)
        entry.count = 100

        again = await store.hit("k", 60000, clock.now)

        assert again.count == 2
