"""Tests for the runtime rate limiter.

Limits use a token bucket held in Redis when available and in-process
otherwise. Invalid window_seconds is logged and replaced by 60 seconds.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from qcauth.service.runtime import Runtime


@pytest.fixture
def redis_runtime(settings):
    cache = AsyncMock()
    cache.check_rate_limit = AsyncMock(return_value=True)
    rt = Runtime(settings, cache=cache)
    yield rt
    rt.store.close()


class TestCheckRateLimit:
    async def test_zero_limit_always_passes(self, runtime):
        assert await runtime.check_rate_limit("test_key", 0, 60) is True
        assert await runtime.check_rate_limit("test_key", -1, 60) is True

    async def test_invalid_window_logs_warning(self, runtime):
        with patch("qcauth.service.runtime.logger") as mock_logger:
            await runtime.check_rate_limit("test_key", 10, 0)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0

    async def test_valid_window_no_warning(self, runtime):
        with patch("qcauth.service.runtime.logger") as mock_logger:
            await runtime.check_rate_limit("test_key", 10, 60)
            mock_logger.warning.assert_not_called()

    async def test_bucket_empties_after_limit(self, runtime):
        for i in range(5):
            assert await runtime.check_rate_limit("test_key", 5, 60) is True, f"call {i + 1}"
        assert await runtime.check_rate_limit("test_key", 5, 60) is False

    async def test_different_keys_independent(self, runtime):
        for _ in range(3):
            await runtime.check_rate_limit("key1", 3, 60)
        assert await runtime.check_rate_limit("key2", 3, 60) is True
        assert await runtime.check_rate_limit("key1", 3, 60) is False

    async def test_return_remaining(self, runtime):
        allowed, remaining, reset = await runtime.check_rate_limit(
            "test_key", 3, 60, return_remaining=True
        )
        assert allowed is True
        assert remaining == 2
        assert reset == 0

    async def test_bucket_refills_over_time(self, runtime):
        for _ in range(2):
            await runtime.check_rate_limit("test_key", 2, 1)
        assert await runtime.check_rate_limit("test_key", 2, 1) is False

        tokens, _ = runtime._local_rate_limits["test_key"]
        backdated = datetime.now(timezone.utc) - timedelta(seconds=2)
        runtime._local_rate_limits["test_key"] = (tokens, backdated)

        assert await runtime.check_rate_limit("test_key", 2, 1) is True

    async def test_uses_redis_when_available(self, redis_runtime):
        assert await redis_runtime.check_rate_limit("test_key", 10, 60) is True
        redis_runtime.cache.check_rate_limit.assert_called_once_with(
            "test_key", 10, 60, return_remaining=False, cost=1
        )
        assert redis_runtime._local_rate_limits == {}

    async def test_concurrent_calls(self, runtime):
        results = await asyncio.gather(
            *[runtime.check_rate_limit("test_concurrent", 10, 60) for _ in range(15)]
        )
        assert results.count(True) == 10
        assert results.count(False) == 5


class TestRedisFallback:
    def test_missing_redis_outside_dev_is_fatal(self, settings):
        settings = settings.model_copy(
            update={"test_mode": False, "allow_redis_fallback_dev": False, "redis_url": None}
        )
        with pytest.raises(RuntimeError):
            Runtime(settings)

    def test_missing_redis_in_test_mode_falls_back(self, runtime):
        assert runtime.cache is None


class TestLocalBucketBound:
    async def test_refilled_buckets_dropped_for_new_keys(self, runtime):
        runtime.local_rate_limit_max_keys = 2
        await runtime.check_rate_limit("rate:login:a", 5, 60)
        await runtime.check_rate_limit("rate:login:b", 5, 60)
        past = datetime.now(timezone.utc) - timedelta(seconds=1)
        runtime._local_rate_limit_full_at["rate:login:a"] = past
        runtime._local_rate_limit_full_at["rate:login:b"] = past

        assert await runtime.check_rate_limit("rate:login:c", 5, 60) is True
        assert set(runtime._local_rate_limits) == {"rate:login:c"}
        assert set(runtime._local_rate_limit_full_at) == {"rate:login:c"}

    async def test_map_never_exceeds_cap(self, runtime):
        runtime.local_rate_limit_max_keys = 3
        for i in range(10):
            await runtime.check_rate_limit(f"rate:login:user{i}", 1, 60)
            assert len(runtime._local_rate_limits) <= 3
        assert "rate:login:user9" in runtime._local_rate_limits

    async def test_drained_bucket_kept_over_nearly_full_one(self, runtime):
        runtime.local_rate_limit_max_keys = 2
        for _ in range(3):
            await runtime.check_rate_limit("rate:login:victim", 3, 60)
        await runtime.check_rate_limit("rate:login:other", 3, 60)

        await runtime.check_rate_limit("rate:login:new", 3, 60)

        assert "rate:login:victim" in runtime._local_rate_limits
        assert "rate:login:other" not in runtime._local_rate_limits
        assert await runtime.check_rate_limit("rate:login:victim", 3, 60) is False

    async def test_existing_key_at_cap_evicts_nothing(self, runtime):
        runtime.local_rate_limit_max_keys = 2
        await runtime.check_rate_limit("rate:login:a", 5, 60)
        await runtime.check_rate_limit("rate:login:b", 5, 60)
        await runtime.check_rate_limit("rate:login:a", 5, 60)
        assert set(runtime._local_rate_limits) == {"rate:login:a", "rate:login:b"}
