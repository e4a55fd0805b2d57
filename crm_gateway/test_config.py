"""Tests for environment-driven configuration."""

import os

import pytest

from crm_gateway.config import GatewayConfig

GATEWAY_VARS = (
    "SF_INSTANCE_URL",
    "VITE_AGENTFORCE_INSTANCE_URL",
    "SF_CLIENT_ID",
    "SF_CLIENT_SECRET",
    "VITE_AGENTFORCE_CLIENT_ID",
    "VITE_AGENTFORCE_CLIENT_SECRET",
    "SF_API_VERSION",
    "SFMC_CLIENT_ID",
    "SFMC_CLIENT_SECRET",
    "SFMC_SUBDOMAIN",
    "SFMC_ACCOUNT_ID",
    "API_HOST",
    "API_PORT",
    "LOG_LEVEL",
    "UPSTREAM_TIMEOUT",
    "CHECKOUT_COMPENSATE",
    "CHECKOUT_CANCELLED_STATUS",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in GATEWAY_VARS:
        monkeypatch.delenv(name, raising=False)
    empty = tmp_path / "empty.env"
    empty.write_text("")
    return str(empty)


def test_defaults(clean_env):
    config = GatewayConfig.from_env(clean_env)

    assert config.instance_url == "https://login.salesforce.com"
    assert config.api_version == "v60.0"
    assert config.port == 3001
    assert config.upstream_timeout == 120.0
    assert not config.checkout_compensate
    assert not config.has_crm_credentials
    assert not config.has_marketing_credentials


def test_primary_variables(clean_env, monkeypatch):
    monkeypatch.setenv("SF_INSTANCE_URL", "https://acme.my.salesforce.com/")
    monkeypatch.setenv("SF_CLIENT_ID", "id")
    monkeypatch.setenv("SF_CLIENT_SECRET", "secret")
    monkeypatch.setenv("SF_API_VERSION", "v61.0")
    monkeypatch.setenv("API_PORT", "8080")
    monkeypatch.setenv("CHECKOUT_COMPENSATE", "true")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = GatewayConfig.from_env(clean_env)

    assert config.instance_url == "https://acme.my.salesforce.com"
    assert config.has_crm_credentials
    assert config.token_url == "https://acme.my.salesforce.com/services/oauth2/token"
    assert config.query_path == "/services/data/v61.0/query"
    assert config.sobject_path("Order", "801A") == "/services/data/v61.0/sobjects/Order/801A"
    assert config.port == 8080
    assert config.checkout_compensate
    assert config.log_level == "DEBUG"


def test_legacy_fallbacks(clean_env, monkeypatch):
    monkeypatch.setenv("VITE_AGENTFORCE_INSTANCE_URL", "https://legacy.my.salesforce.com")
    monkeypatch.setenv("VITE_AGENTFORCE_CLIENT_ID", "legacy-id")
    monkeypatch.setenv("VITE_AGENTFORCE_CLIENT_SECRET", "legacy-secret")

    config = GatewayConfig.from_env(clean_env)

    assert config.instance_url == "https://legacy.my.salesforce.com"
    assert config.client_id == "legacy-id"
    assert config.has_crm_credentials


def test_env_file_is_loaded(clean_env, tmp_path):
    env_file = tmp_path / "gateway.env"
    env_file.write_text("SFMC_CLIENT_ID=mc-id\nSFMC_CLIENT_SECRET=mc-secret\nSFMC_SUBDOMAIN=mc123\n")
    try:
        config = GatewayConfig.from_env(str(env_file))
    finally:
        for name in ("SFMC_CLIENT_ID", "SFMC_CLIENT_SECRET", "SFMC_SUBDOMAIN"):
            os.environ.pop(name, None)

    assert config.has_marketing_credentials
    assert config.mc_token_url == "https://mc123.auth.marketingcloudapis.com/v2/token"
    assert config.mc_rest_url == "https://mc123.rest.marketingcloudapis.com"
