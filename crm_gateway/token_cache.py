"""Client-credentials token cache for the CRM and marketing domains.

Tokens are cached per identity domain and refreshed 30 seconds before they
expire. Refreshes are single-flight: while one exchange is outstanding for a
domain, every other caller awaits that same exchange.
"""

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .config import GatewayConfig
from .errors import AuthFailure

logger = logging.getLogger(__name__)

REFRESH_SKEW_SECONDS = 30.0

Exchange = Callable[[], Awaitable[Dict[str, Any]]]


class TokenDomain(str, Enum):
    CORE = "core"
    MARKETING_AUTOMATION = "marketing_automation"


# Used when the token response carries no expires_in.
DEFAULT_LIFETIMES = {
    TokenDomain.CORE: 1800,
    TokenDomain.MARKETING_AUTOMATION: 1080,
}


@dataclass
class TokenEntry:
    domain: TokenDomain
    value: str
    expires_at: float

    def is_fresh(self, now: float, skew: float = REFRESH_SKEW_SECONDS) -> bool:
        return now < self.expires_at - skew


def basic_auth_header(client_id: str, client_secret: str) -> str:
    """Generate Basic auth header for OAuth2 token request."""
    credentials = f"{client_id}:{client_secret}"
    encoded = base64.b64encode(credentials.encode()).decode()
    return f"Basic {encoded}"


async def request_core_token(client: httpx.AsyncClient, config: GatewayConfig) -> httpx.Response:
    """POST a client-credentials grant to the CRM token endpoint.

    Returns the raw response so callers can relay it untouched.
    """
    headers = {
        "Authorization": basic_auth_header(config.client_id, config.client_secret),
        "Content-Type": "application/x-www-form-urlencoded",
        "Accept": "application/json",
    }
    return await client.post(
        config.token_url,
        headers=headers,
        data={"grant_type": "client_credentials"},
    )


def _token_payload(response: httpx.Response, domain: TokenDomain) -> Dict[str, Any]:
    if response.status_code >= 400:
        raise AuthFailure(
            f"{domain.value} token exchange failed with status {response.status_code}",
            details=response.text[:500],
        )
    try:
        data = response.json()
    except ValueError:
        raise AuthFailure(f"{domain.value} token response is not JSON")
    if not isinstance(data, dict) or not data.get("access_token"):
        raise AuthFailure(f"{domain.value} token response has no access_token")
    return data


def core_exchange(client: httpx.AsyncClient, config: GatewayConfig) -> Exchange:
    async def exchange() -> Dict[str, Any]:
        response = await request_core_token(client, config)
        return _token_payload(response, TokenDomain.CORE)

    return exchange


def marketing_exchange(client: httpx.AsyncClient, config: GatewayConfig) -> Exchange:
    async def exchange() -> Dict[str, Any]:
        body = {
            "grant_type": "client_credentials",
            "client_id": config.mc_client_id,
            "client_secret": config.mc_client_secret,
        }
        if config.mc_account_id:
            body["account_id"] = config.mc_account_id
        response = await client.post(config.mc_token_url, json=body)
        return _token_payload(response, TokenDomain.MARKETING_AUTOMATION)

    return exchange


class TokenCache:
    """Per-domain bearer token cache with single-flight refresh."""

    def __init__(
        self,
        exchanges: Dict[TokenDomain, Exchange],
        refresh_skew: float = REFRESH_SKEW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._exchanges = dict(exchanges)
        self._refresh_skew = refresh_skew
        self._clock = clock
        self._entries: Dict[TokenDomain, TokenEntry] = {}
        self._inflight: Dict[TokenDomain, "asyncio.Future[TokenEntry]"] = {}

    @classmethod
    def from_config(cls, client: httpx.AsyncClient, config: GatewayConfig) -> "TokenCache":
        """Register an exchange for every domain the config has credentials for."""
        exchanges: Dict[TokenDomain, Exchange] = {}
        if config.has_crm_credentials:
            exchanges[TokenDomain.CORE] = core_exchange(client, config)
        if config.has_marketing_credentials:
            exchanges[TokenDomain.MARKETING_AUTOMATION] = marketing_exchange(client, config)
        return cls(exchanges)

    def is_configured(self, domain: TokenDomain) -> bool:
        return domain in self._exchanges

    def peek(self, domain: TokenDomain) -> Optional[TokenEntry]:
        """Return the cached entry, fresh or not, without refreshing."""
        return self._entries.get(domain)

    async def get_token(self, domain: TokenDomain) -> str:
        """Return a valid bearer token for ``domain``.

        Raises:
            AuthFailure: If the domain is not configured or the exchange fails.
        """
        entry = self._entries.get(domain)
        if entry is not None and entry.is_fresh(self._clock(), self._refresh_skew):
            return entry.value

        if domain not in self._exchanges:
            raise AuthFailure(f"{domain.value} credentials are not configured")

        pending = self._inflight.get(domain)
        if pending is None:
            pending = asyncio.ensure_future(self._refresh(domain))
            self._inflight[domain] = pending
            pending.add_done_callback(lambda done: self._clear_inflight(domain, done))
        # A cancelled waiter must not cancel the exchange the others share.
        entry = await asyncio.shield(pending)
        return entry.value

    def _clear_inflight(self, domain: TokenDomain, done: "asyncio.Future[TokenEntry]") -> None:
        if self._inflight.get(domain) is done:
            del self._inflight[domain]
        if not done.cancelled() and done.exception() is not None:
            # Retrieved here so an exchange nobody awaited is not reported as unhandled.
            logger.debug(f"{domain.value} token refresh failed: {done.exception()}")

    async def _refresh(self, domain: TokenDomain) -> TokenEntry:
        logger.info(f"Requesting new {domain.value} access token...")
        try:
            data = await self._exchanges[domain]()
        except httpx.HTTPError as e:
            logger.error(f"{domain.value} token exchange failed: {e}")
            raise AuthFailure(f"{domain.value} token exchange failed: {e}") from e
        except AuthFailure as e:
            logger.error(f"{domain.value} token exchange rejected: {e.message}")
            raise

        expires_in = data.get("expires_in") or DEFAULT_LIFETIMES[domain]
        entry = TokenEntry(
            domain=domain,
            value=data["access_token"],
            expires_at=self._clock() + float(expires_in),
        )
        self._entries[domain] = entry
        logger.info(f"Obtained {domain.value} access token (expires in {expires_in}s)")
        return entry
