"""Shared fixtures: a scripted fake of the CRM and other upstream APIs."""

import json
from typing import Any, Callable, List, Optional

import httpx
import pytest

from crm_gateway.config import GatewayConfig
from crm_gateway.record_client import RecordClient

INSTANCE_URL = "https://crm.example.com"


class FakeUpstream:
    """Scripted upstream served through ``httpx.MockTransport``.

    Rules are matched in the order they were added: method, a path suffix
    and, for SOQL queries, a fragment of the ``q`` parameter. Unmatched
    requests get a CRM-style 404.
    """

    def __init__(self):
        self.calls: List[httpx.Request] = []
        self._rules = []

    def on(
        self,
        method: str,
        path: str,
        status: int = 200,
        json_body: Any = None,
        soql: Optional[str] = None,
        text: Optional[str] = None,
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    ) -> "FakeUpstream":
        self._rules.append((method, path, soql, status, json_body, text, handler))
        return self

    def query(self, soql: str, records: List[dict], status: int = 200) -> "FakeUpstream":
        return self.on("GET", "/query", status, {"totalSize": len(records), "done": True, "records": records}, soql=soql)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        q = request.url.params.get("q", "")
        for method, path, soql, status, json_body, text, handler in self._rules:
            if request.method != method or not request.url.path.endswith(path):
                continue
            if soql is not None and soql not in q:
                continue
            if handler is not None:
                return handler(request)
            if text is not None:
                return httpx.Response(status, text=text)
            if json_body is None:
                return httpx.Response(status)
            return httpx.Response(status, json=json_body)
        return httpx.Response(
            404, json=[{"errorCode": "NOT_FOUND", "message": f"{request.method} {request.url}"}]
        )

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls_to(self, method: str, path: str) -> List[httpx.Request]:
        return [c for c in self.calls if c.method == method and c.url.path.endswith(path)]

    def soql_calls(self, fragment: str) -> List[httpx.Request]:
        return [c for c in self.calls if fragment in c.url.params.get("q", "")]


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content)


def script_happy_path(fake: FakeUpstream, existing_entry: bool = True, member: bool = True) -> None:
    """Script every CRM call of a successful checkout for order 801A."""
    fake.query("SELECT AccountId FROM Contact", [{"AccountId": "001A"}])
    fake.query("FROM Pricebook2 WHERE IsStandard", [{"Id": "01sSTD"}])
    fake.on("POST", "/sobjects/Order", 201, {"id": "801A"})
    fake.query("FROM PricebookEntry", [{"Id": "01uA"}] if existing_entry else [])
    fake.on("POST", "/sobjects/PricebookEntry", 201, {"id": "01uNEW"})
    fake.on("POST", "/sobjects/OrderItem", 201, {"id": "802A"})
    fake.on("PATCH", "/sobjects/Order/801A", 204)
    fake.query("FROM LoyaltyProgramMember", [{"Id": "0lMA", "ProgramId": "0lpA"}] if member else [])
    fake.query("FROM LoyaltyProgramCurrency", [{"Id": "0lcA"}])
    fake.on("POST", "/sobjects/LoyaltyLedger", 201, {"id": "0lgA"})
    fake.query("SELECT OrderNumber", [{"OrderNumber": "00000107"}])


@pytest.fixture
def config():
    return GatewayConfig(
        instance_url=INSTANCE_URL,
        client_id="test-client",
        client_secret="test-secret",
    )


@pytest.fixture
def anonymous_config():
    """A config with no server-side credentials."""
    return GatewayConfig(instance_url=INSTANCE_URL)


@pytest.fixture
def fake():
    return FakeUpstream()


@pytest.fixture
def http_client(fake):
    return httpx.AsyncClient(transport=fake.transport())


@pytest.fixture
def records(http_client, config):
    return RecordClient(http_client, config)
