"""Marketing-automation REST client.

Fires journey entry events and transactional sends using the marketing
token domain of the shared token cache.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from .config import GatewayConfig
from .errors import UpstreamTransportError, WriteError
from .token_cache import TokenCache, TokenDomain

logger = logging.getLogger(__name__)


class MarketingClient:
    """Client for journey and messaging APIs."""

    def __init__(self, client: httpx.AsyncClient, config: GatewayConfig, tokens: TokenCache):
        self._client = client
        self.config = config
        self.tokens = tokens

    @property
    def is_configured(self) -> bool:
        return self.config.has_marketing_credentials

    async def _post(self, path: str, payload: Dict[str, Any], label: str) -> Dict[str, Any]:
        token = await self.tokens.get_token(TokenDomain.MARKETING_AUTOMATION)
        try:
            response = await self._client.post(
                f"{self.config.mc_rest_url}{path}",
                headers={"Authorization": f"Bearer {token}"},
                json=payload,
            )
        except httpx.HTTPError as e:
            logger.error(f"{label} failed: {e}")
            raise UpstreamTransportError(str(e) or e.__class__.__name__) from e

        if response.status_code >= 400:
            logger.error(f"{label} failed: {response.status_code} {response.text[:500]}")
            raise WriteError(
                f"{label} error {response.status_code}",
                status_code=502,
                details=response.text[:500],
            )
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    async def fire_journey_entry(
        self, event_definition_key: str, contact_key: str, data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Fire a journey entry event for ``contact_key``."""
        if not self.is_configured:
            logger.info(f"Skipped journey entry (not configured): {event_definition_key}")
            return {"skipped": True}

        payload = {
            "ContactKey": contact_key,
            "EventDefinitionKey": event_definition_key,
            "Data": {"ContactKey": contact_key, **(data or {})},
        }
        logger.info(f"Firing journey entry {event_definition_key} for {contact_key}")
        result = await self._post("/interaction/v1/events", payload, "Journey entry")
        logger.info(f"Journey entry success: {event_definition_key} {result.get('eventInstanceId')}")
        return result

    async def fire_transactional_send(
        self, definition_key: str, email: str, attributes: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Send a triggered email to ``email``."""
        if not self.is_configured:
            logger.info(f"Skipped transactional send (not configured): {definition_key}")
            return {"skipped": True}

        payload = {
            "definitionKey": definition_key,
            "recipients": [
                {"contactKey": email, "to": email, "attributes": attributes or {}},
            ],
        }
        logger.info(f"Firing transactional send {definition_key} to {email}")
        return await self._post("/messaging/v1/email/messages", payload, "Transactional send")
