"""
API-key check shared by the REST bridge and the SSE server.

With VECTOR_MEMORY_API_KEY set, a request must carry the key in
`X-MCP-API-Key` or `Authorization: Bearer <key>`. Without a key, only
loopback clients are served.
"""

import hmac
import os
from typing import Optional

from starlette.requests import Request

API_KEY_ENV = "VECTOR_MEMORY_API_KEY"
API_KEY_HEADER = "X-MCP-API-Key"
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def get_configured_api_key() -> str:
    return str(os.getenv(API_KEY_ENV) or "").strip()


def is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    value = authorization.strip()
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


def auth_failure_reason(request: Request) -> Optional[str]:
    """None when the request may pass, otherwise a short reason code."""
    configured = get_configured_api_key()
    if not configured:
        if is_loopback_request(request):
            return None
        return "api_key_not_configured_remote_client"

    provided = (
        str(request.headers.get(API_KEY_HEADER, "")).strip()
        or extract_bearer_token(request.headers.get("Authorization"))
    )
    if not provided or not hmac.compare_digest(provided, configured):
        return "invalid_or_missing_api_key"
    return None
