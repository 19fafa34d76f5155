import asyncio

import httpx
import pytest
import respx

from catalog_sync.ingest.bigcommerce import RateLimitExceeded
from catalog_sync.utils.rate_limit import RateLimiter

from conftest import BASE_URL, FakeSleep


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def make_limiter(**kwargs):
    clock = FakeClock()
    sleep = FakeSleep()

    async def advancing_sleep(seconds):
        await sleep(seconds)
        clock.now += seconds

    limiter = RateLimiter(clock=clock, sleep=advancing_sleep, **kwargs)
    return limiter, clock, sleep


def test_record_response_recomputes_min_delay():
    limiter, _, _ = make_limiter()
    limiter.record_response({"X-Rate-Limit-Requests-Left": "300", "X-Rate-Limit-Requests-Quota": "450",
                             "X-Rate-Limit-Time-Window-Ms": "30000", "X-Rate-Limit-Time-Reset-Ms": "1200"})
    assert limiter.state.min_delay_ms == 67
    assert limiter.state.reset_ms == 1200

    limiter.record_response({"x-rate-limit-requests-left": "150"})
    assert limiter.state.min_delay_ms == 101

    limiter.record_response({"x-rate-limit-requests-left": "40"})
    assert limiter.state.min_delay_ms == 134


def test_record_response_keeps_previous_values_when_headers_missing():
    limiter, _, _ = make_limiter()
    limiter.record_response({"x-rate-limit-requests-left": "320", "x-rate-limit-time-reset-ms": "900"})
    limiter.record_response({"content-type": "application/json"})
    assert limiter.state.requests_left == 320
    assert limiter.state.reset_ms == 900
    assert limiter.state.quota == 450


@pytest.mark.asyncio
async def test_requests_are_spaced_by_min_delay():
    limiter, clock, sleep = make_limiter()
    issued = []
    for _ in range(5):
        await limiter.before_request()
        issued.append(clock.now)
    gaps = [round((b - a) * 1000, 6) for a, b in zip(issued, issued[1:])]
    assert all(gap >= limiter.state.min_delay_ms for gap in gaps)


@pytest.mark.asyncio
async def test_low_quota_doubles_spacing():
    limiter, clock, sleep = make_limiter()
    await limiter.before_request()
    limiter.record_response({"x-rate-limit-requests-left": "45"})
    start = clock.now
    await limiter.before_request()
    assert round((clock.now - start) * 1000, 6) >= limiter.state.min_delay_ms * 2


@pytest.mark.asyncio
async def test_critical_quota_waits_for_reset():
    limiter, _, sleep = make_limiter()
    limiter.record_response({"x-rate-limit-requests-left": "5", "x-rate-limit-time-reset-ms": "2500"})
    await limiter.before_request()
    assert sleep.calls[0] >= 2.5
    assert limiter.state.requests_left == limiter.state.quota


@pytest.mark.asyncio
async def test_backoff_uses_reset_header_plus_margin():
    limiter, _, sleep = make_limiter()
    limiter.record_response({"x-rate-limit-requests-left": "0"})
    await limiter.backoff({"X-Rate-Limit-Time-Reset-Ms": "1000"})
    assert sleep.calls == [1.5]
    assert limiter.state.requests_left == 450


@pytest.mark.asyncio
async def test_gateway_retries_429_then_succeeds(make_client, fake_sleep):
    responses = [
        httpx.Response(429, headers={"x-rate-limit-time-reset-ms": "1000", "x-rate-limit-requests-left": "0"}),
        httpx.Response(200, json={"data": []}, headers={"x-rate-limit-requests-left": "449"}),
    ]
    async with respx.mock(assert_all_called=True) as router:
        route = router.get(f"{BASE_URL}/v3/catalog/trees/categories").mock(side_effect=responses)
        async with httpx.AsyncClient() as session:
            client = make_client(session)
            payload = await client.list_categories(page=1)
    assert payload == {"data": []}
    assert route.call_count == 2
    assert 1.5 in fake_sleep.calls
    assert client.rate_limiter.state.requests_left == 449


@pytest.mark.asyncio
async def test_gateway_gives_up_after_retry_ceiling(make_client):
    async with respx.mock(assert_all_called=True) as router:
        route = router.get(f"{BASE_URL}/v3/catalog/trees/categories").mock(
            return_value=httpx.Response(429, headers={"x-rate-limit-time-reset-ms": "10"})
        )
        async with httpx.AsyncClient() as session:
            client = make_client(session)
            with pytest.raises(RateLimitExceeded):
                await client.list_categories(page=1)
    assert route.call_count == 4


@pytest.mark.asyncio
async def test_gateway_sends_auth_header(make_client):
    async with respx.mock(assert_all_called=True) as router:
        route = router.get(f"{BASE_URL}/v3/catalog/trees/categories").mock(
            return_value=httpx.Response(200, json={"data": []})
        )
        async with httpx.AsyncClient() as session:
            await make_client(session).list_categories(page=1)
    assert route.calls.last.request.headers["X-Auth-Token"] == "token"


@pytest.mark.asyncio
async def test_concurrent_callers_are_spaced_by_min_delay():
    clock = FakeClock()

    async def yielding_sleep(seconds):
        await asyncio.sleep(0)
        clock.now += seconds

    limiter = RateLimiter(clock=clock, sleep=yielding_sleep)
    issued = []

    async def call():
        await limiter.before_request()
        issued.append(clock.now)

    await asyncio.gather(*(call() for _ in range(20)))

    assert len(issued) == 20
    gaps = [b - a for a, b in zip(issued, issued[1:])]
    assert all(gap >= limiter.state.min_delay_ms / 1000 - 1e-6 for gap in gaps)
