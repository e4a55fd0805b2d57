"""Error taxonomy for the gateway.

Every error carries the HTTP status it is surfaced with, so handlers only
need to translate a ``GatewayError`` into a JSON response.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for errors reported to the caller."""

    status_code = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class AuthFailure(GatewayError):
    """A client-credentials exchange failed or no token is available."""

    status_code = 401


class ResolutionError(GatewayError):
    """A required foreign reference (account, contact, price book) is missing."""

    status_code = 400


class ConfigurationError(GatewayError):
    """The CRM org lacks something the gateway depends on."""

    status_code = 500


class WriteError(GatewayError):
    """A create/update did not return an id or returned a non-2xx status."""

    status_code = 500


class UpstreamTransportError(GatewayError):
    """An upstream could not be reached or answered with garbage."""

    status_code = 502


class MalformedRequest(GatewayError):
    """Invalid or missing request fields, rejected before any network call."""

    status_code = 400
