"""Tests for the per-domain token cache."""

import asyncio
import base64
from urllib.parse import parse_qs

import httpx
import pytest

from crm_gateway.config import GatewayConfig
from crm_gateway.errors import AuthFailure
from crm_gateway.token_cache import TokenCache, TokenDomain, core_exchange


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class CountingExchange:
    def __init__(self, expires_in=1800, delay: float = 0.01, fail: bool = False):
        self.calls = 0
        self.expires_in = expires_in
        self.delay = delay
        self.fail = fail

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.fail:
            raise AuthFailure("token exchange failed with status 400")
        return {"access_token": f"token-{self.calls}", "expires_in": self.expires_in}


@pytest.mark.asyncio
async def test_token_is_cached():
    exchange = CountingExchange()
    cache = TokenCache({TokenDomain.CORE: exchange}, clock=FakeClock())

    assert await cache.get_token(TokenDomain.CORE) == "token-1"
    assert await cache.get_token(TokenDomain.CORE) == "token-1"
    assert exchange.calls == 1


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_exchange():
    exchange = CountingExchange(delay=0.05)
    cache = TokenCache({TokenDomain.CORE: exchange}, clock=FakeClock())

    tokens = await asyncio.gather(*(cache.get_token(TokenDomain.CORE) for _ in range(20)))

    assert exchange.calls == 1
    assert set(tokens) == {"token-1"}


@pytest.mark.asyncio
async def test_refreshes_inside_skew_window():
    clock = FakeClock()
    exchange = CountingExchange(expires_in=100)
    cache = TokenCache({TokenDomain.CORE: exchange}, clock=clock)

    await cache.get_token(TokenDomain.CORE)
    clock.now += 69
    assert await cache.get_token(TokenDomain.CORE) == "token-1"
    clock.now += 1
    assert await cache.get_token(TokenDomain.CORE) == "token-2"
    assert exchange.calls == 2


@pytest.mark.asyncio
async def test_missing_expiry_uses_domain_default():
    clock = FakeClock()
    cache = TokenCache({TokenDomain.MARKETING_AUTOMATION: CountingExchange(expires_in=None)}, clock=clock)

    await cache.get_token(TokenDomain.MARKETING_AUTOMATION)

    entry = cache.peek(TokenDomain.MARKETING_AUTOMATION)
    assert entry.expires_at == clock.now + 1080


@pytest.mark.asyncio
async def test_domains_are_independent():
    core = CountingExchange()
    marketing = CountingExchange()
    cache = TokenCache(
        {TokenDomain.CORE: core, TokenDomain.MARKETING_AUTOMATION: marketing}, clock=FakeClock()
    )

    await asyncio.gather(
        cache.get_token(TokenDomain.CORE),
        cache.get_token(TokenDomain.MARKETING_AUTOMATION),
    )
    assert (core.calls, marketing.calls) == (1, 1)


@pytest.mark.asyncio
async def test_failure_reaches_every_waiter_and_is_retried():
    exchange = CountingExchange(fail=True)
    cache = TokenCache({TokenDomain.CORE: exchange}, clock=FakeClock())

    results = await asyncio.gather(
        *(cache.get_token(TokenDomain.CORE) for _ in range(5)), return_exceptions=True
    )
    assert all(isinstance(r, AuthFailure) for r in results)
    assert exchange.calls == 1

    exchange.fail = False
    assert await cache.get_token(TokenDomain.CORE) == "token-2"


@pytest.mark.asyncio
async def test_unconfigured_domain_raises_auth_failure():
    cache = TokenCache({})
    assert not cache.is_configured(TokenDomain.CORE)
    with pytest.raises(AuthFailure):
        await cache.get_token(TokenDomain.CORE)


@pytest.mark.asyncio
async def test_transport_error_becomes_auth_failure():
    async def broken():
        raise httpx.ConnectError("connection refused")

    cache = TokenCache({TokenDomain.CORE: broken})
    with pytest.raises(AuthFailure) as excinfo:
        await cache.get_token(TokenDomain.CORE)
    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_core_exchange_posts_client_credentials(config):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"access_token": "abc", "token_type": "Bearer"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    data = await core_exchange(client, config)()

    assert data["access_token"] == "abc"
    request = seen[0]
    assert str(request.url) == "https://crm.example.com/services/oauth2/token"
    assert parse_qs(request.content.decode()) == {"grant_type": ["client_credentials"]}
    expected = base64.b64encode(b"test-client:test-secret").decode()
    assert request.headers["authorization"] == f"Basic {expected}"


@pytest.mark.asyncio
async def test_core_exchange_rejects_error_status(config):
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda r: httpx.Response(400, json={"error": "invalid_client"}))
    )
    with pytest.raises(AuthFailure) as excinfo:
        await core_exchange(client, config)()
    assert "400" in excinfo.value.message


@pytest.mark.asyncio
async def test_marketing_exchange_includes_account_id():
    config = GatewayConfig(
        mc_client_id="mc-id", mc_client_secret="mc-secret", mc_subdomain="mc123", mc_account_id="5100"
    )
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"access_token": "mc-token", "expires_in": 1079})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    cache = TokenCache.from_config(client, config)

    assert not cache.is_configured(TokenDomain.CORE)
    assert await cache.get_token(TokenDomain.MARKETING_AUTOMATION) == "mc-token"
    assert str(seen[0].url) == "https://mc123.auth.marketingcloudapis.com/v2/token"
    body = seen[0].read()
    assert b'"account_id"' in body and b"5100" in body


def test_from_config_registers_core_only_with_credentials(config, anonymous_config):
    client = httpx.AsyncClient()
    assert TokenCache.from_config(client, config).is_configured(TokenDomain.CORE)
    assert not TokenCache.from_config(client, anonymous_config).is_configured(TokenDomain.CORE)
