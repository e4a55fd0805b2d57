"""Tests for the proxy route table."""

import pytest

from crm_gateway.config import GatewayConfig
from crm_gateway.router import RouteRule, UpstreamRouter, filter_headers


@pytest.fixture
def router():
    config = GatewayConfig(instance_url="https://crm.example.com")
    return UpstreamRouter(config.route_rules())


def test_longest_prefix_wins(router):
    routed = router.route("/proxy/cms/contents?channel=abc")
    assert routed.rule.prefix == "/proxy/cms/contents"
    assert routed.url == (
        "https://crm.example.com/services/data/v60.0/connect/cms/contents?channel=abc"
    )


def test_sibling_prefix_is_not_a_match(router):
    routed = router.route("/proxy/cms-media/0ABC/image.png")
    assert routed.rule.prefix == "/proxy/cms-media"
    assert routed.url == "https://crm.example.com/cms/delivery/media/0ABC/image.png"


def test_prefix_must_end_at_separator(router):
    assert router.route("/proxy/cmsfoo") is None
    assert router.route("/proxy/unknown/thing") is None


def test_exact_prefix_match(router):
    routed = router.route("/proxy/oauth/token")
    assert routed.url == "https://crm.example.com/services/oauth2/token"
    assert routed.upstream_path == "/services/oauth2/token"


def test_rewrite_to_third_party_host(router):
    routed = router.route("/proxy/agentforce/agents/0Xx/sessions")
    assert routed.url == "https://api.salesforce.com/einstein/ai-agent/v1/agents/0Xx/sessions"


def test_rules_sorted_by_prefix_length(router):
    lengths = [len(rule.prefix) for rule in router.rules]
    assert lengths == sorted(lengths, reverse=True)


def test_extra_routes_are_appended():
    config = GatewayConfig(
        instance_url="https://crm.example.com",
        extra_routes=[RouteRule("/proxy/custom", "https://api.example.org/", "/v2")],
    )
    routed = UpstreamRouter(config.route_rules()).route("/proxy/custom/items?page=2")
    assert routed.url == "https://api.example.org/v2/items?page=2"


def test_only_cms_contents_post_is_buffered(router):
    contents = router.find_rule("/proxy/cms/contents")
    assert contents.needs_buffering("POST")
    assert contents.needs_buffering("post")
    assert not contents.needs_buffering("GET")
    assert not router.find_rule("/proxy/cms/channels").needs_buffering("POST")


def test_filter_headers_drops_browser_headers():
    headers = filter_headers(
        {
            "Content-Type": "application/json",
            "Authorization": "Bearer abc",
            "Cookie": "sid=1",
            "Origin": "http://localhost:5173",
            "Sec-Fetch-Mode": "cors",
            "X-Api-Key": "k",
        }
    )
    assert headers == {
        "content-type": "application/json",
        "authorization": "Bearer abc",
        "x-api-key": "k",
        "accept": "application/json",
    }


@pytest.mark.parametrize("accept", [None, "", "text/html,application/xhtml+xml"])
def test_filter_headers_forces_json_accept(accept):
    inbound = {"accept": accept} if accept is not None else {}
    assert filter_headers(inbound)["accept"] == "application/json"


def test_filter_headers_keeps_explicit_accept():
    assert filter_headers({"Accept": "image/png"})["accept"] == "image/png"
