from datetime import datetime, timedelta, timezone

import pytest

from services.errors import RateLimited
from utils.rate_limiter import RateLimiter

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_blocks_after_max_attempts_within_window():
    limiter = RateLimiter()

    results = [await limiter.check_rate_limit("register:203.0.113.7", 3, 15, now=NOW) for _ in range(4)]

    assert [allowed for allowed, _ in results] == [True, True, True, False]
    assert "Too many attempts" in results[-1][1]


@pytest.mark.asyncio
async def test_window_expiry_allows_again():
    limiter = RateLimiter()
    for _ in range(3):
        await limiter.check_rate_limit("register:203.0.113.7", 3, 15, now=NOW)

    allowed, _ = await limiter.check_rate_limit("register:203.0.113.7", 3, 15, now=NOW + timedelta(minutes=16))

    assert allowed


@pytest.mark.asyncio
async def test_keys_are_independent_and_enforce_raises():
    limiter = RateLimiter()
    await limiter.enforce("register:a", 1, 15)
    await limiter.enforce("register:b", 1, 15)

    with pytest.raises(RateLimited) as exc:
        await limiter.enforce("register:a", 1, 15)
    assert exc.value.status_code == 429

    limiter.reset("register:a")
    await limiter.enforce("register:a", 1, 15)


@pytest.mark.asyncio
async def test_expired_attempts_are_dropped_not_kept_as_empty_entries():
    limiter = RateLimiter()
    await limiter.check_rate_limit("register:203.0.113.7", 3, 15, now=NOW)
    await limiter.check_rate_limit("register:203.0.113.7", 3, 15, now=NOW + timedelta(minutes=1))

    await limiter.check_rate_limit("register:203.0.113.7", 3, 15, now=NOW + timedelta(minutes=30))

    assert limiter.attempts == {"register:203.0.113.7": [NOW + timedelta(minutes=30)]}
    assert all(limiter.attempts.values())


@pytest.mark.asyncio
async def test_refused_attempts_do_not_grow_the_entry():
    limiter = RateLimiter()
    for _ in range(5):
        await limiter.check_rate_limit("register:a", 2, 15, now=NOW)

    assert len(limiter.attempts["register:a"]) == 2
