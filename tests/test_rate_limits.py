"""Tests for the route rate limiter and runtime Redis handling."""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from accountgate.service.runtime import Runtime, _mask_url_password, check_rate_limit


@pytest.fixture
def local_runtime():
    """Runtime double with no Redis cache."""
    runtime = MagicMock(spec=Runtime)
    runtime.cache = None
    runtime._local_rate_limits = {}
    runtime._local_rate_limit_lock = asyncio.Lock()
    return runtime


async def test_non_positive_limit_always_passes(local_runtime):
    assert (await check_rate_limit(local_runtime, "k", 0, 60))[0] is True
    assert (await check_rate_limit(local_runtime, "k", -1, 60))[0] is True


async def test_invalid_window_logs_warning(local_runtime):
    with patch("accountgate.service.runtime.logger") as mock_logger:
        allowed, _, _ = await check_rate_limit(local_runtime, "k", 10, 0)

    assert allowed is True
    mock_logger.warning.assert_called_once()
    assert mock_logger.warning.call_args[0][0] == "rate_limit_invalid_window"
    assert mock_logger.warning.call_args[1]["window_seconds"] == 0


async def test_bucket_empties_then_refuses(local_runtime):
    results = [await check_rate_limit(local_runtime, "signin:a@x.com", 3, 60) for _ in range(4)]

    assert [allowed for allowed, _, _ in results] == [True, True, True, False]
    assert [remaining for _, remaining, _ in results[:3]] == [2, 1, 0]
    assert results[3][2] >= 1


async def test_keys_are_independent(local_runtime):
    await check_rate_limit(local_runtime, "reset:a@x.com", 1, 60)
    assert (await check_rate_limit(local_runtime, "reset:a@x.com", 1, 60))[0] is False
    assert (await check_rate_limit(local_runtime, "reset:b@x.com", 1, 60))[0] is True


async def test_redis_is_preferred_when_present():
    runtime = MagicMock(spec=Runtime)
    runtime.cache = AsyncMock()
    runtime.cache.check_rate_limit = AsyncMock(return_value=(True, 9, 0))

    assert await check_rate_limit(runtime, "k", 10, 60) == (True, 9, 0)
    runtime.cache.check_rate_limit.assert_awaited_once_with("k", 10, 60, cost=1)


@pytest.mark.parametrize(
    "url, expected",
    [
        ("redis://:hunter2@localhost:6379/0", "redis://:***@localhost:6379/0"),
        ("redis://localhost:6379/0", "redis://localhost:6379/0"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected


def test_runtime_requires_redis_outside_test_mode(monkeypatch):
    from accountgate.config import reset_settings_cache

    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
    reset_settings_cache()
    try:
        with pytest.raises(RuntimeError, match="Redis is required"):
            Runtime()
    finally:
        reset_settings_cache()
