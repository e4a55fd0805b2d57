# Copyright 2026 UCP Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Commerce gateway HTTP server."""

import asyncio
import contextlib
import functools
import logging
from typing import Any, Dict, Optional

import click
import httpx
import uvicorn
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from .catalog import DEFAULT_PRICEBOOK, CatalogReader
from .config import GatewayConfig
from .contacts import ContactService
from .errors import AuthFailure, GatewayError, MalformedRequest, UpstreamTransportError
from .files import FileService
from .loyalty import LoyaltyService
from .marketing import MarketingClient
from .models import CheckoutRequest, ContactRequest, UploadRequest
from .proxy import UpstreamProxy
from .record_client import RecordClient, RecordResponse
from .router import UpstreamRouter
from .saga import CheckoutSaga
from .token_cache import TokenCache, TokenDomain, request_core_token

logger = logging.getLogger(__name__)

CORS_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, x-goog-api-key, x-api-key",
    "Access-Control-Max-Age": "86400",
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if level.upper() != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)


class CORSMiddleware(BaseHTTPMiddleware):
    """Answers every preflight with 204 and opens every response to any origin."""

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=CORS_PREFLIGHT_HEADERS)
        response = await call_next(request)
        response.headers["Access-Control-Allow-Origin"] = "*"
        return response


# ── Request helpers ────────────────────────────────────────────────────


async def read_json(request: Request) -> Dict[str, Any]:
    """Parse the request body as a JSON object."""
    try:
        body = await request.json()
    except ValueError:
        raise MalformedRequest("Invalid request body")
    if not isinstance(body, dict):
        raise MalformedRequest("Invalid request body")
    return body


def validation_details(e: ValidationError):
    return e.errors(include_url=False, include_context=False, include_input=False)


async def resolve_token(
    request: Request, body_token: Optional[str] = None, required: bool = True
) -> Optional[str]:
    """Pick the CRM token for this request.

    An explicit token (in the body or as a Bearer header) wins; otherwise
    the server-side token cache supplies one.

    Raises:
        AuthFailure: When ``required`` and no token can be obtained.
    """
    explicit = caller_token(request, body_token)
    if explicit:
        return explicit
    try:
        return await request.app.state.tokens.get_token(TokenDomain.CORE)
    except AuthFailure as e:
        if required:
            raise
        logger.info(f"No CRM token available: {e.message}")
        return None


def caller_token(request: Request, body_token: Optional[str] = None) -> Optional[str]:
    """The token the caller supplied, in the body or as a Bearer header.

    Never falls back to the server-side cache.
    """
    if body_token:
        return body_token
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


def relay(response: RecordResponse) -> Response:
    """Relay a CRM response with its status and payload."""
    if response.status_code == 204:
        return Response(status_code=204)
    return JSONResponse(response.payload(), status_code=response.status_code)


def _require(body: Dict[str, Any], *names: str) -> None:
    if any(not body.get(name) for name in names):
        raise MalformedRequest(f"Missing {', '.join(names)}")


# ── Handlers ───────────────────────────────────────────────────────────


async def health(request: Request) -> Response:
    return JSONResponse({"status": "ok"})


async def token(request: Request) -> Response:
    config: GatewayConfig = request.app.state.config
    if not config.has_crm_credentials:
        return JSONResponse({"error": "Missing CLIENT_ID/CLIENT_SECRET/INSTANCE_URL"}, status_code=500)
    try:
        upstream = await request_core_token(request.app.state.http, config)
    except httpx.HTTPError as e:
        logger.error(f"Token request failed: {e}")
        raise UpstreamTransportError(str(e) or e.__class__.__name__) from e
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        media_type=upstream.headers.get("content-type", "application/json"),
    )


async def list_products(request: Request) -> Response:
    params = request.query_params
    token_value = await resolve_token(request, required=False)
    page = await request.app.state.catalog.list_products(
        token_value,
        query=params.get("q", ""),
        limit=params.get("limit"),
        offset=params.get("offset"),
        pricebook_name=params.get("pricebook") or DEFAULT_PRICEBOOK,
    )
    return JSONResponse(page.model_dump(by_alias=True))


async def get_product(request: Request) -> Response:
    token_value = await resolve_token(request, required=False)
    product = await request.app.state.catalog.get_product(
        token_value,
        request.path_params["product_id"],
        pricebook_name=request.query_params.get("pricebook") or DEFAULT_PRICEBOOK,
    )
    return JSONResponse(product.model_dump(by_alias=True))


async def checkout(request: Request) -> Response:
    body = await read_json(request)
    if not body.get("items"):
        raise MalformedRequest("Missing items")
    try:
        checkout_request = CheckoutRequest.model_validate(body)
    except ValidationError as e:
        raise MalformedRequest("Invalid checkout request", details=validation_details(e))
    token_value = await resolve_token(request, body.get("token"))
    result = await request.app.state.saga.checkout(token_value, checkout_request)
    return JSONResponse(result.model_dump(by_alias=True))


async def simulate_shipment(request: Request) -> Response:
    body = await read_json(request)
    _require(body, "orderId", "newStatus")
    token_value = await resolve_token(request, body.get("token"))
    result = await request.app.state.saga.simulate_shipment(token_value, body["orderId"], body["newStatus"])
    return JSONResponse(result)


# The passthroughs act strictly on the caller's behalf: no server token.


async def crm_query(request: Request) -> Response:
    body = await read_json(request)
    token_value = caller_token(request, body.get("token"))
    if not body.get("soql") or not token_value:
        raise MalformedRequest("Missing soql or token")
    return relay(await request.app.state.records.query(token_value, body["soql"]))


async def crm_graphql(request: Request) -> Response:
    body = await read_json(request)
    token_value = caller_token(request, body.get("token"))
    if not body.get("query") or not token_value:
        raise MalformedRequest("Missing query or token")
    return relay(await request.app.state.records.graphql(token_value, body["query"], body.get("variables")))


async def create_record(request: Request) -> Response:
    body = await read_json(request)
    token_value = caller_token(request, body.get("token"))
    if not body.get("sobject") or not body.get("fields") or not token_value:
        raise MalformedRequest("Missing sobject, fields, or token")
    return relay(await request.app.state.records.create(token_value, body["sobject"], body["fields"]))


async def record(request: Request) -> Response:
    record_id = request.path_params["record_id"]
    records: RecordClient = request.app.state.records
    if request.method == "GET":
        sobject = request.query_params.get("sobject")
        token_value = caller_token(request)
        if not sobject or not token_value:
            raise MalformedRequest("Missing sobject or token")
        fields = [f for f in request.query_params.get("fields", "").split(",") if f]
        return relay(await records.get_record(token_value, sobject, record_id, fields=fields or None))

    body = await read_json(request)
    token_value = caller_token(request, body.get("token"))
    if not body.get("sobject") or not body.get("fields") or not token_value:
        raise MalformedRequest("Missing sobject, fields, or token")
    return relay(await records.update(token_value, body["sobject"], record_id, body["fields"]))


async def upload(request: Request) -> Response:
    body = await read_json(request)
    try:
        upload_request = UploadRequest.model_validate(body)
    except ValidationError as e:
        raise MalformedRequest("Missing imageBase64 or fileName", details=validation_details(e))
    token_value = await resolve_token(request, upload_request.token)
    return relay(await request.app.state.files.upload(token_value, upload_request))


async def download_file(request: Request) -> Response:
    authorization = request.headers.get("authorization")
    if not authorization:
        return JSONResponse({"error": "Missing authorization"}, status_code=401)
    upstream = await request.app.state.files.open_download(authorization, request.path_params["version_id"])
    headers = {"content-type": upstream.headers.get("content-type", "application/octet-stream")}
    # aiter_bytes decodes, so the length only holds for an unencoded body
    if "content-length" in upstream.headers and "content-encoding" not in upstream.headers:
        headers["content-length"] = upstream.headers["content-length"]
    return StreamingResponse(
        upstream.aiter_bytes(),
        status_code=upstream.status_code,
        headers=headers,
        background=BackgroundTask(upstream.aclose),
    )


async def demo_contacts(request: Request) -> Response:
    token_value = await resolve_token(request, required=False)
    if not token_value:
        return JSONResponse({"contacts": []})
    contacts = await request.app.state.contacts.list_demo_contacts(token_value)
    return JSONResponse({"contacts": [c.model_dump(by_alias=True) for c in contacts]})


async def create_contact(request: Request) -> Response:
    body = await read_json(request)
    try:
        contact_request = ContactRequest.model_validate(body)
    except ValidationError as e:
        raise MalformedRequest("Missing email", details=validation_details(e))
    token_value = await resolve_token(request, body.get("token"))
    result = await request.app.state.contacts.find_or_create(token_value, contact_request)
    return JSONResponse(result, status_code=200 if result["existing"] else 201)


async def loyalty_enroll(request: Request) -> Response:
    body = await read_json(request)
    token_value = await resolve_token(request, body.get("token"))
    return relay(
        await request.app.state.loyalty.enroll(token_value, body.get("accountId"), body.get("programName"))
    )


async def loyalty_member(request: Request) -> Response:
    token_value = await resolve_token(request)
    response = await request.app.state.loyalty.member(token_value, request.path_params["account_id"])
    if not response.ok:
        return relay(response)
    return JSONResponse({"member": response.first_record() or None})


async def loyalty_balance(request: Request) -> Response:
    token_value = await resolve_token(request)
    response = await request.app.state.loyalty.balance(token_value, request.path_params["account_id"])
    if not response.ok:
        return relay(response)
    record_data = response.first_record()
    return JSONResponse(
        {"accountId": request.path_params["account_id"], "points": record_data.get("PointsBalance__c") or 0},
    )


async def loyalty_accrue(request: Request) -> Response:
    body = await read_json(request)
    token_value = await resolve_token(request, body.get("token"))
    return relay(await request.app.state.loyalty.accrue(token_value, body.get("accountId"), body.get("points")))


async def loyalty_redeem(request: Request) -> Response:
    body = await read_json(request)
    token_value = await resolve_token(request, body.get("token"))
    return relay(await request.app.state.loyalty.redeem(token_value, body.get("accountId"), body.get("points")))


async def journey_entry(request: Request) -> Response:
    body = await read_json(request)
    _require(body, "eventDefinitionKey", "contactKey")
    result = await request.app.state.marketing.fire_journey_entry(
        body["eventDefinitionKey"], body["contactKey"], body.get("data")
    )
    return JSONResponse(result)


async def transactional_send(request: Request) -> Response:
    body = await read_json(request)
    _require(body, "definitionKey", "email")
    result = await request.app.state.marketing.fire_transactional_send(
        body["definitionKey"], body["email"], body.get("attributes")
    )
    return JSONResponse(result)


async def proxy(request: Request) -> Response:
    return await request.app.state.proxy.handle(request)


# ── Error handlers ─────────────────────────────────────────────────────


async def gateway_error(request: Request, exc: GatewayError) -> Response:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers={"Access-Control-Allow-Origin": "*"})


async def http_error(request: Request, exc: HTTPException) -> Response:
    message = "Not found" if exc.status_code == 404 else exc.detail
    headers = dict(exc.headers or {})
    headers["Access-Control-Allow-Origin"] = "*"
    return JSONResponse({"error": message}, status_code=exc.status_code, headers=headers)


async def unhandled_error(request: Request, exc: Exception) -> Response:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        {"error": "Internal server error"},
        status_code=500,
        headers={"Access-Control-Allow-Origin": "*"},
    )


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error(f"Unhandled background error: {context.get('message')}", exc_info=exc)


ROUTES = [
    Route("/health", health, methods=["GET"]),
    Route("/token", token, methods=["POST"]),
    Route("/products", list_products, methods=["GET"]),
    Route("/product/{product_id}", get_product, methods=["GET"]),
    Route("/checkout", checkout, methods=["POST"]),
    Route("/order/simulate-shipment", simulate_shipment, methods=["POST"]),
    Route("/crm-query", crm_query, methods=["POST"]),
    Route("/crm-graphql", crm_graphql, methods=["POST"]),
    Route("/crm-record", create_record, methods=["POST"]),
    Route("/crm-record/{record_id}", record, methods=["GET", "PATCH"]),
    Route("/upload", upload, methods=["POST"]),
    Route("/file/{version_id}", download_file, methods=["GET"]),
    Route("/contacts", create_contact, methods=["POST"]),
    Route("/demo/contacts", demo_contacts, methods=["GET"]),
    Route("/loyalty/enroll", loyalty_enroll, methods=["POST"]),
    Route("/loyalty/member/{account_id}", loyalty_member, methods=["GET"]),
    Route("/loyalty/balance/{account_id}", loyalty_balance, methods=["GET"]),
    Route("/loyalty/accrue", loyalty_accrue, methods=["POST"]),
    Route("/loyalty/redeem", loyalty_redeem, methods=["POST"]),
    Route("/marketing/journey-entry", journey_entry, methods=["POST"]),
    Route("/marketing/transactional-send", transactional_send, methods=["POST"]),
    Route(
        "/proxy/{path:path}",
        proxy,
        methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"],
    ),
]


def create_app(
    config: Optional[GatewayConfig] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Starlette:
    """Create and configure the Starlette application.

    Args:
        config: Gateway configuration; loaded from the environment if omitted.
        http_client: Shared upstream client. Created in the lifespan (and
            closed with it) when omitted.
    """
    config = config or GatewayConfig.from_env()

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        asyncio.get_running_loop().set_exception_handler(_log_loop_exception)
        owned = http_client is None
        client = http_client or httpx.AsyncClient(timeout=config.upstream_timeout)
        records = RecordClient(client, config)
        tokens = TokenCache.from_config(client, config)

        app.state.config = config
        app.state.http = client
        app.state.tokens = tokens
        app.state.records = records
        app.state.catalog = CatalogReader(records)
        app.state.saga = CheckoutSaga(
            records,
            compensate=config.checkout_compensate,
            cancelled_status=config.checkout_cancelled_status,
        )
        app.state.contacts = ContactService(records)
        app.state.loyalty = LoyaltyService(records)
        app.state.marketing = MarketingClient(client, config, tokens)
        app.state.files = FileService(records)
        app.state.proxy = UpstreamProxy(client, UpstreamRouter(config.route_rules()))

        logger.info(
            f"Gateway ready: instance={config.instance_url} "
            f"crm_credentials={config.has_crm_credentials} "
            f"marketing={config.has_marketing_credentials}"
        )
        try:
            yield
        finally:
            if owned:
                await client.aclose()

    return Starlette(
        routes=ROUTES,
        middleware=[Middleware(CORSMiddleware)],
        exception_handlers={
            GatewayError: gateway_error,
            HTTPException: http_error,
            Exception: unhandled_error,
        },
        lifespan=lifespan,
    )


# Expose app for ASGI servers and the serverless entry point
_config = GatewayConfig.from_env()
configure_logging(_config.log_level)
app = create_app(_config)


def make_sync(func):
    """Wrap an async function to run synchronously."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.command()
@click.option("--host", default=None, help="Bind address (default: API_HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Port (default: API_PORT or 3001).")
@click.option("--env-file", default=None, help="Path to a .env file.")
@make_sync
async def run(host, port, env_file):
    """Run the commerce gateway server."""
    config = GatewayConfig.from_env(env_file)
    configure_logging(config.log_level)
    if not config.has_crm_credentials:
        logger.warning("CRM credentials not set; catalog reads fall back and writes need a caller token")

    server_config = uvicorn.Config(
        create_app(config),
        host=host or config.host,
        port=port or config.port,
        log_level=config.log_level.lower(),
    )
    server = uvicorn.Server(server_config)
    await server.serve()


if __name__ == "__main__":
    run()
