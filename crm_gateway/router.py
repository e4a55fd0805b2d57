"""Prefix-based routing of proxied requests to upstream APIs."""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

# Headers the upstream APIs need. Browser headers (cookies, origin, sec-*)
# make the CRM answer with a login page instead of JSON.
FORWARDED_HEADERS = (
    "content-type",
    "content-length",
    "authorization",
    "x-goog-api-key",
    "x-api-key",
    "accept",
    "transfer-encoding",
)


@dataclass(frozen=True)
class RouteRule:
    """A single prefix -> upstream rewrite rule."""

    prefix: str
    upstream_host: str
    rewrite_path: str
    buffer_methods: FrozenSet[str] = frozenset()

    def matches(self, raw_path: str) -> bool:
        """Exact match, or prefix followed by a path or query separator."""
        return (
            raw_path == self.prefix
            or raw_path.startswith(self.prefix + "/")
            or raw_path.startswith(self.prefix + "?")
        )

    def needs_buffering(self, method: str) -> bool:
        return method.upper() in self.buffer_methods


@dataclass(frozen=True)
class RewrittenRequest:
    """Result of routing an inbound path."""

    rule: RouteRule
    url: str

    @property
    def upstream_path(self) -> str:
        return self.url[len(self.rule.upstream_host.rstrip("/")):]


class UpstreamRouter:
    """Static route table, matched longest prefix first."""

    def __init__(self, rules: Iterable[RouteRule]):
        self._rules: List[RouteRule] = sorted(rules, key=lambda r: len(r.prefix), reverse=True)

    @property
    def rules(self) -> List[RouteRule]:
        return list(self._rules)

    def find_rule(self, raw_path: str) -> Optional[RouteRule]:
        for rule in self._rules:
            if rule.matches(raw_path):
                return rule
        return None

    def route(self, raw_path: str) -> Optional[RewrittenRequest]:
        """Rewrite ``raw_path`` (path plus query string) to its upstream URL.

        Returns None when no rule applies.
        """
        rule = self.find_rule(raw_path)
        if rule is None:
            return None
        remainder = raw_path[len(rule.prefix):]
        url = rule.upstream_host.rstrip("/") + rule.rewrite_path + remainder
        return RewrittenRequest(rule=rule, url=url)


def filter_headers(inbound: Mapping[str, str]) -> Dict[str, str]:
    """Keep only the allow-listed headers and force a JSON ``accept``."""
    lowered = {key.lower(): value for key, value in inbound.items()}
    headers = {name: lowered[name] for name in FORWARDED_HEADERS if lowered.get(name)}
    accept = headers.get("accept")
    if not accept or "text/html" in accept:
        headers["accept"] = "application/json"
    return headers
