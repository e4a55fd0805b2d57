"""Configuration management for the commerce gateway."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .router import RouteRule

DEFAULT_INSTANCE_URL = "https://login.salesforce.com"
DEFAULT_API_VERSION = "v60.0"


def _env(*names: str, default: Optional[str] = None) -> Optional[str]:
    """Return the first non-empty environment variable among ``names``."""
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class GatewayConfig:
    """Configuration for the CRM gateway and its upstreams."""

    instance_url: str = DEFAULT_INSTANCE_URL
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    api_version: str = DEFAULT_API_VERSION
    mc_client_id: Optional[str] = None
    mc_client_secret: Optional[str] = None
    mc_subdomain: Optional[str] = None
    mc_account_id: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    upstream_timeout: float = 120.0
    checkout_compensate: bool = False
    checkout_cancelled_status: str = "Cancelled"
    extra_routes: List[RouteRule] = field(default_factory=list)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "GatewayConfig":
        """Load configuration from environment variables.

        Args:
            env_file: Optional path to .env file. If not provided, looks for
                     .env in the crm_gateway directory, then the working
                     directory.

        Returns:
            GatewayConfig instance with loaded configuration.

        Credentials are optional: without them the gateway serves fallback
        catalog results and rejects CRM writes.
        """
        if env_file:
            load_dotenv(env_file)
        else:
            env_path = Path(__file__).parent / ".env"
            if env_path.exists():
                load_dotenv(env_path)
            else:
                load_dotenv()

        return cls(
            instance_url=_env(
                "SF_INSTANCE_URL", "VITE_AGENTFORCE_INSTANCE_URL", default=DEFAULT_INSTANCE_URL
            ).rstrip("/"),
            client_id=_env("SF_CLIENT_ID", "VITE_AGENTFORCE_CLIENT_ID"),
            client_secret=_env("SF_CLIENT_SECRET", "VITE_AGENTFORCE_CLIENT_SECRET"),
            api_version=_env("SF_API_VERSION", default=DEFAULT_API_VERSION),
            mc_client_id=_env("SFMC_CLIENT_ID"),
            mc_client_secret=_env("SFMC_CLIENT_SECRET"),
            mc_subdomain=_env("SFMC_SUBDOMAIN"),
            mc_account_id=_env("SFMC_ACCOUNT_ID"),
            host=_env("API_HOST", default="0.0.0.0"),
            port=int(_env("API_PORT", default="3001")),
            log_level=_env("LOG_LEVEL", default="INFO").upper(),
            upstream_timeout=float(_env("UPSTREAM_TIMEOUT", default="120")),
            checkout_compensate=_env_flag("CHECKOUT_COMPENSATE"),
            checkout_cancelled_status=_env("CHECKOUT_CANCELLED_STATUS", default="Cancelled"),
        )

    @property
    def has_crm_credentials(self) -> bool:
        """Whether a server-side client-credentials exchange is possible."""
        return bool(self.client_id and self.client_secret and self.instance_url)

    @property
    def has_marketing_credentials(self) -> bool:
        """Whether the marketing-automation platform is configured."""
        return bool(self.mc_client_id and self.mc_client_secret and self.mc_subdomain)

    @property
    def token_url(self) -> str:
        """Get the OAuth2 token URL of the core CRM."""
        return f"{self.instance_url}/services/oauth2/token"

    @property
    def data_path(self) -> str:
        """Get the versioned REST data API path."""
        return f"/services/data/{self.api_version}"

    @property
    def query_path(self) -> str:
        return f"{self.data_path}/query"

    @property
    def graphql_path(self) -> str:
        return f"{self.data_path}/graphql"

    def sobject_path(self, sobject: str, record_id: Optional[str] = None) -> str:
        """Get the sObject collection path, or a single record path."""
        path = f"{self.data_path}/sobjects/{sobject}"
        if record_id:
            path = f"{path}/{record_id}"
        return path

    @property
    def mc_token_url(self) -> str:
        """Get the marketing-automation OAuth2 token URL."""
        return f"https://{self.mc_subdomain}.auth.marketingcloudapis.com/v2/token"

    @property
    def mc_rest_url(self) -> str:
        """Get the marketing-automation REST base URL."""
        return f"https://{self.mc_subdomain}.rest.marketingcloudapis.com"

    def route_rules(self) -> List[RouteRule]:
        """Build the reverse-proxy route table for this configuration."""
        instance = self.instance_url
        google = "https://generativelanguage.googleapis.com"
        rules = [
            RouteRule("/proxy/oauth/token", instance, "/services/oauth2/token"),
            RouteRule("/proxy/agentforce", "https://api.salesforce.com", "/einstein/ai-agent/v1"),
            RouteRule("/proxy/cms-media", instance, "/cms/delivery/media"),
            RouteRule(
                "/proxy/cms/contents",
                instance,
                f"{self.data_path}/connect/cms/contents",
                buffer_methods=frozenset({"POST"}),
            ),
            RouteRule("/proxy/cms", instance, f"{self.data_path}/connect/cms"),
            RouteRule(
                "/proxy/imagen/generate",
                google,
                "/v1beta/models/imagen-4.0-generate-001:predict",
            ),
            RouteRule(
                "/proxy/gemini/generateContent",
                google,
                "/v1beta/models/gemini-2.5-flash-image:generateContent",
            ),
            RouteRule("/proxy/firefly/token", "https://ims-na1.adobelogin.com", "/ims/token/v3"),
            RouteRule("/proxy/firefly/generate", "https://firefly-api.adobe.io", "/v3/images/generate"),
            RouteRule("/proxy/datacloud", instance, self.data_path),
        ]
        return rules + list(self.extra_routes)
