import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from collector.credentials import CredentialCache, parse_token_response
from core.errors import AuthenticationError


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def _cache(handler, clock, lifetime=3600):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CredentialCache(client, token_url="https://auth.example/token", default_lifetime_seconds=lifetime, clock=clock)


def test_two_calls_within_validity_hit_network_once():
    calls = []

    def handler(request):
        calls.append(request.url)
        return httpx.Response(200, json={"body": f"token-{len(calls)}"})

    clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    cache = _cache(handler, clock)

    async def scenario():
        first = await cache.get_token()
        clock.advance(60)
        second = await cache.get_token()
        return first, second

    first, second = asyncio.run(scenario())

    assert len(calls) == 1
    assert first is second
    assert first.token == "token-1"
    assert first.expires_at == datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc)


def test_expired_credential_is_reacquired_at_expiry():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(200, json={"body": f"token-{len(calls)}"})

    clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    cache = _cache(handler, clock, lifetime=600)

    async def scenario():
        await cache.get_token()
        clock.advance(600)
        return await cache.get_token()

    refreshed = asyncio.run(scenario())

    assert len(calls) == 2
    assert refreshed.token == "token-2"


def test_provider_declared_lifetime_wins_over_default():
    def handler(request):
        return httpx.Response(200, json={"access_token": "abc", "expires_in": 120})

    clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    cache = _cache(handler, clock, lifetime=3600)

    credential = asyncio.run(cache.get_token())

    assert credential.expires_at == clock.now + timedelta(seconds=120)


def test_concurrent_callers_share_one_exchange():
    calls = []

    async def handler(request):
        calls.append(1)
        await asyncio.sleep(0.01)
        return httpx.Response(200, json={"body": "shared"})

    clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    cache = _cache(handler, clock)

    async def scenario():
        return await asyncio.gather(*(cache.get_token() for _ in range(5)))

    results = asyncio.run(scenario())

    assert len(calls) == 1
    assert cache.acquisitions == 1
    assert {c.token for c in results} == {"shared"}


def test_concurrent_callers_observe_same_failure_and_cache_stays_empty():
    calls = []

    async def handler(request):
        calls.append(1)
        await asyncio.sleep(0.01)
        return httpx.Response(503)

    clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    cache = _cache(handler, clock)

    async def scenario():
        return await asyncio.gather(*(cache.get_token() for _ in range(3)), return_exceptions=True)

    results = asyncio.run(scenario())

    assert len(calls) == 1
    assert all(isinstance(r, AuthenticationError) for r in results)
    assert cache.credential is None


def test_failure_then_retry_succeeds():
    responses = [httpx.Response(500), httpx.Response(200, json={"body": "ok"})]

    def handler(request):
        return responses.pop(0)

    clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    cache = _cache(handler, clock)

    async def scenario():
        with pytest.raises(AuthenticationError):
            await cache.get_token()
        return await cache.get_token()

    assert asyncio.run(scenario()).token == "ok"


def test_transport_error_and_bad_body_raise_authentication_error():
    def broken(request):
        raise httpx.ConnectError("dns failure", request=request)

    def not_json(request):
        return httpx.Response(200, text="<html>nope</html>")

    clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))

    with pytest.raises(AuthenticationError):
        asyncio.run(_cache(broken, clock).get_token())
    with pytest.raises(AuthenticationError):
        asyncio.run(_cache(not_json, clock).get_token())


def test_cancel_aborts_pending_exchange_and_next_call_starts_fresh():
    calls = []

    async def handler(request):
        calls.append(1)
        if len(calls) == 1:
            await asyncio.sleep(10)
        return httpx.Response(200, json={"body": f"token-{len(calls)}"})

    clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    cache = _cache(handler, clock)

    async def scenario():
        waiter = asyncio.ensure_future(cache.get_token())
        while not calls:
            await asyncio.sleep(0)
        cache.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert cache.credential is None
        return await cache.get_token()

    credential = asyncio.run(scenario())

    assert credential.token == "token-2"
    assert len(calls) == 2


def test_invalidate_only_drops_matching_token():
    def handler(request):
        return httpx.Response(200, json={"body": "current"})

    clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    cache = _cache(handler, clock)
    asyncio.run(cache.get_token())

    cache.invalidate("stale")
    assert cache.credential is not None

    cache.invalidate("current")
    assert cache.credential is None


def test_parse_token_response_shapes():
    assert parse_token_response({"body": "t1"}) == ("t1", None)
    assert parse_token_response({"body": {"access_token": "t2", "expires_in": 60}}) == ("t2", 60)
    assert parse_token_response({"access_token": "t3", "expires_in": "bad"}) == ("t3", None)
    with pytest.raises(AuthenticationError):
        parse_token_response({"body": ""})
    with pytest.raises(AuthenticationError):
        parse_token_response([1, 2])
