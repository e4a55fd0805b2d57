"""Commerce orchestration gateway.

This package fronts a CRM org and a handful of third-party APIs for a
storefront: catalog reads, checkout into CRM orders, loyalty, contacts,
marketing events, file uploads and a prefix-routed reverse proxy.
"""

from .config import GatewayConfig
from .errors import GatewayError
from .router import RouteRule, UpstreamRouter
from .token_cache import TokenCache, TokenDomain

__all__ = [
    "GatewayConfig",
    "GatewayError",
    "RouteRule",
    "UpstreamRouter",
    "TokenCache",
    "TokenDomain",
]
