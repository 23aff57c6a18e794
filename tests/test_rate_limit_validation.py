"""Rate limiting: the local token bucket and the Redis/local dispatch."""

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from bynd.service.errors import StorageUnavailable
from bynd.service.runtime import LocalBuckets, check_rate_limit, get_runtime


@pytest.fixture
def local_runtime():
    return SimpleNamespace(cache=None, local_buckets=LocalBuckets())


@pytest.fixture
def redis_runtime():
    cache = AsyncMock()
    cache.check_rate_limit = AsyncMock(return_value=True)
    return SimpleNamespace(cache=cache, local_buckets=LocalBuckets())


class TestLocalBuckets:
    async def test_drains_then_denies(self):
        buckets = LocalBuckets()
        results = [(await buckets.take("k", 3, 60))[0] for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_reports_remaining_and_retry_after(self):
        buckets = LocalBuckets()
        assert await buckets.take("k", 3, 60) == (True, 2, 0)
        await buckets.take("k", 3, 60)
        await buckets.take("k", 3, 60)

        allowed, remaining, retry_after = await buckets.take("k", 3, 60)

        assert allowed is False
        assert remaining == 0
        # one token every 20 seconds
        assert 0 < retry_after <= 20

    async def test_refills_with_elapsed_time(self):
        buckets = LocalBuckets()
        await buckets.take("k", 2, 1)
        await buckets.take("k", 2, 1)
        assert (await buckets.take("k", 2, 1))[0] is False

        level, _ = buckets.buckets["k"]
        buckets.buckets["k"] = (level, datetime.now(timezone.utc) - timedelta(seconds=2))

        assert (await buckets.take("k", 2, 1))[0] is True

    async def test_keys_are_independent(self):
        buckets = LocalBuckets()
        for _ in range(2):
            await buckets.take("a", 2, 60)
        assert (await buckets.take("a", 2, 60))[0] is False
        assert (await buckets.take("b", 2, 60))[0] is True

    async def test_concurrent_takes_never_exceed_limit(self):
        buckets = LocalBuckets()
        results = await asyncio.gather(*[buckets.take("k", 10, 60) for _ in range(15)])
        assert sum(1 for allowed, _, _ in results if allowed) == 10

    def test_prune_drops_idle_buckets(self):
        buckets = LocalBuckets()
        now = datetime.now(timezone.utc)
        buckets.buckets = {
            "idle": (1.0, now - timedelta(minutes=30)),
            "busy": (1.0, now),
        }

        assert buckets.prune(timedelta(minutes=10)) == 1
        assert list(buckets.buckets) == ["busy"]


class TestCheckRateLimit:
    @pytest.mark.parametrize("limit", [0, -1])
    async def test_non_positive_limit_disables_check(self, local_runtime, limit):
        assert await check_rate_limit(local_runtime, "k", limit, 60) is True
        assert local_runtime.local_buckets.buckets == {}

    @pytest.mark.parametrize("window", [0, -5])
    async def test_bad_window_warns_and_falls_back(self, local_runtime, window):
        with patch("bynd.service.runtime.logger") as mock_logger:
            assert await check_rate_limit(local_runtime, "k", 10, window) is True

        mock_logger.warning.assert_called_once()
        args, kwargs = mock_logger.warning.call_args
        assert args[0] == "rate_limit_invalid_window"
        assert kwargs["window_seconds"] == window

    async def test_valid_window_is_silent(self, local_runtime):
        with patch("bynd.service.runtime.logger") as mock_logger:
            await check_rate_limit(local_runtime, "k", 10, 60)
        mock_logger.warning.assert_not_called()

    async def test_tuple_shape_on_request(self, local_runtime):
        result = await check_rate_limit(local_runtime, "k", 5, 60, return_remaining=True)
        assert result == (True, 4, 0)

    async def test_redis_takes_precedence(self, redis_runtime):
        await check_rate_limit(redis_runtime, "k", 10, 60)

        redis_runtime.cache.check_rate_limit.assert_awaited_once_with(
            "k", 10, 60, return_remaining=False, cost=1
        )
        assert redis_runtime.local_buckets.buckets == {}

    async def test_redis_failure_is_storage_unavailable(self, redis_runtime):
        redis_runtime.cache.check_rate_limit = AsyncMock(side_effect=RedisConnectionError("down"))

        with pytest.raises(StorageUnavailable) as excinfo:
            await check_rate_limit(redis_runtime, "k", 10, 60)
        assert excinfo.value.status_code == 503

    async def test_memory_runtime_uses_local_buckets(self):
        runtime = get_runtime()
        assert runtime.cache is None

        for _ in range(5):
            assert await check_rate_limit(runtime, "ip:203.0.113.9", 5, 60) is True
        assert await check_rate_limit(runtime, "ip:203.0.113.9", 5, 60) is False
