"""Reverse proxy for the ``/proxy/...`` route table.

Requests whose route lists the method in ``buffer_methods`` are read fully and
forwarded with an exact ``content-length``; all others are streamed both ways.
"""

import logging
from typing import AsyncIterator, Dict, Mapping, Optional

import httpx
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from .router import UpstreamRouter, filter_headers

logger = logging.getLogger(__name__)

BODYLESS_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

# Not relayed back to the caller. The body is re-framed by the ASGI server
# and httpx has already decoded any content-encoding.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "content-encoding",
        "content-length",
        "access-control-allow-origin",
    }
)


def prepare_upstream_headers(
    inbound: Mapping[str, str], buffered_body: Optional[bytes] = None
) -> Dict[str, str]:
    """Build the header set sent upstream.

    With ``buffered_body`` the framing is replaced by a ``content-length``
    equal to the body's byte length.
    """
    headers = filter_headers(inbound)
    if buffered_body is not None:
        headers.pop("transfer-encoding", None)
        headers["content-length"] = str(len(buffered_body))
    elif "content-length" in headers:
        headers.pop("transfer-encoding", None)
    return headers


def has_body(inbound: Mapping[str, str]) -> bool:
    """Whether the inbound request declares a non-empty body."""
    length = inbound.get("content-length")
    if length is not None:
        return length.strip() != "0"
    return "transfer-encoding" in inbound


def response_headers(upstream: httpx.Response) -> Dict[str, str]:
    return {
        key: value
        for key, value in upstream.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS
    }


def proxy_error(message: str) -> JSONResponse:
    return JSONResponse({"error": "Proxy error", "message": message}, status_code=502)


class UpstreamProxy:
    """Forwards matched requests to their upstream and relays the answer."""

    def __init__(self, client: httpx.AsyncClient, router: UpstreamRouter):
        self._client = client
        self.router = router

    async def handle(self, request: Request) -> Response:
        raw_path = request.url.path
        if request.url.query:
            raw_path = f"{raw_path}?{request.url.query}"

        routed = self.router.route(raw_path)
        if routed is None:
            return JSONResponse({"error": "Not found"}, status_code=404)

        method = request.method.upper()
        content = None
        if routed.rule.needs_buffering(method):
            body = await request.body()
            headers = prepare_upstream_headers(request.headers, buffered_body=body)
            content = body
            logger.info(f"Proxy {method} {routed.rule.prefix} -> {routed.url} (buffered {len(body)} bytes)")
        else:
            headers = prepare_upstream_headers(request.headers)
            if method not in BODYLESS_METHODS and has_body(request.headers):
                content = request.stream()
            logger.info(f"Proxy {method} {routed.rule.prefix} -> {routed.url}")

        upstream_request = self._client.build_request(method, routed.url, headers=headers, content=content)
        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"Proxy error for {routed.url}: {message}")
            return proxy_error(message)

        return StreamingResponse(
            self._relay(upstream, routed.url),
            status_code=upstream.status_code,
            headers=response_headers(upstream),
            background=BackgroundTask(upstream.aclose),
        )

    async def _relay(self, upstream: httpx.Response, url: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            # Headers are already sent; the caller sees a truncated body.
            logger.error(f"Proxy stream from {url} interrupted: {e}")
        finally:
            await upstream.aclose()
