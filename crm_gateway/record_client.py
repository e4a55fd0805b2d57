"""Async client for the CRM's REST object, query and GraphQL APIs.

The client never retries and never raises on upstream error statuses:
callers receive the status code and parsed payload and decide what a
failure means for them.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .config import GatewayConfig
from .errors import UpstreamTransportError

logger = logging.getLogger(__name__)


def soql_quote(value: str) -> str:
    """Escape a value for use inside a single-quoted SOQL literal."""
    return str(value).replace("\\", "\\\\").replace("'", "\\'")


@dataclass
class RecordResponse:
    """Normalized CRM response.

    ``data`` holds the parsed JSON body; ``raw`` holds the text body when it
    could not be parsed. A 204 carries neither.
    """

    status_code: int
    data: Any = None
    raw: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def record_id(self) -> Optional[str]:
        """Id returned by a create call."""
        if isinstance(self.data, dict):
            return self.data.get("id")
        return None

    @property
    def records(self) -> List[Dict[str, Any]]:
        """Rows returned by a SOQL query."""
        if isinstance(self.data, dict):
            return self.data.get("records") or []
        return []

    def first_record(self) -> Dict[str, Any]:
        records = self.records
        return records[0] if records else {}

    def payload(self) -> Any:
        """Body as it should be relayed to a caller."""
        return self.data if self.data is not None else self.raw


class RecordClient:
    """Authenticated GET/POST/PATCH calls against the CRM."""

    def __init__(self, client: httpx.AsyncClient, config: GatewayConfig):
        self._client = client
        self.config = config

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    async def call(
        self,
        token: str,
        method: str,
        path: str,
        body: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> RecordResponse:
        """Issue one CRM call and normalize the response."""
        url = f"{self.config.instance_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                headers=self._headers(token),
                params=params,
                json=body,
            )
        except httpx.HTTPError as e:
            logger.error(f"CRM {method} {path} failed: {e}")
            raise UpstreamTransportError(str(e) or e.__class__.__name__) from e

        if response.status_code == 204:
            return RecordResponse(status_code=204)
        if response.status_code >= 400:
            logger.warning(f"CRM {method} {path} returned {response.status_code}: {response.text[:500]}")
        try:
            return RecordResponse(status_code=response.status_code, data=response.json())
        except ValueError:
            return RecordResponse(status_code=response.status_code, raw=response.text)

    async def query(self, token: str, soql: str) -> RecordResponse:
        logger.debug(f"SOQL: {soql[:120]}")
        return await self.call(token, "GET", self.config.query_path, params={"q": soql})

    async def create(self, token: str, sobject: str, fields: Dict[str, Any]) -> RecordResponse:
        logger.info(f"Creating {sobject}")
        return await self.call(token, "POST", self.config.sobject_path(sobject), body=fields)

    async def update(
        self, token: str, sobject: str, record_id: str, fields: Dict[str, Any]
    ) -> RecordResponse:
        logger.info(f"Updating {sobject}/{record_id}")
        return await self.call(
            token, "PATCH", self.config.sobject_path(sobject, record_id), body=fields
        )

    async def get_record(
        self,
        token: str,
        sobject: str,
        record_id: str,
        fields: Optional[List[str]] = None,
    ) -> RecordResponse:
        params = {"fields": ",".join(fields)} if fields else None
        return await self.call(
            token, "GET", self.config.sobject_path(sobject, record_id), params=params
        )

    async def graphql(
        self, token: str, query: str, variables: Optional[Dict[str, Any]] = None
    ) -> RecordResponse:
        return await self.call(
            token,
            "POST",
            self.config.graphql_path,
            body={"query": query, "variables": variables or {}},
        )

    async def open_stream(self, authorization: str, path: str) -> httpx.Response:
        """Open a streamed GET for binary content; caller must close it.

        ``authorization`` is relayed verbatim from the inbound request.
        """
        request = self._client.build_request(
            "GET",
            f"{self.config.instance_url}{path}",
            headers={"Authorization": authorization, "Accept": "*/*"},
        )
        try:
            return await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error(f"CRM stream {path} failed: {e}")
            raise UpstreamTransportError(str(e) or e.__class__.__name__) from e
