import hmac
import os
from dataclasses import dataclass
from typing import Iterable, Optional

from fastapi import Depends, HTTPException, Request, status
from starlette.requests import HTTPConnection

from config import load_gateway_config

ACCESS_FULL = "full"
ACCESS_READONLY = "readonly"

_MCP_API_KEY_HEADER = "X-MCP-API-Key"
_MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "MCP_API_KEY_ALLOW_INSECURE_LOCAL"
_CF_ACCESS_EMAIL_HEADER = "Cf-Access-Authenticated-User-Email"
_TOKEN_QUERY_PARAM = "token"
_TOKEN_COOKIE = "switchyard_token"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


@dataclass(frozen=True)
class AccessDecision:
    level: Optional[str]
    reason: str = ""

    @property
    def granted(self) -> bool:
        return self.level is not None


def _allow_insecure_local_without_api_key() -> bool:
    value = str(os.getenv(_MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def _is_loopback_request(connection: HTTPConnection) -> bool:
    client = getattr(connection, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
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


def _provided_tokens(connection: HTTPConnection) -> Iterable[str]:
    """Every credential the client sent, in the order they are checked."""
    candidates = (
        _extract_bearer_token(connection.headers.get("Authorization")),
        connection.headers.get(_MCP_API_KEY_HEADER),
        connection.query_params.get(_TOKEN_QUERY_PARAM),
        connection.cookies.get(_TOKEN_COOKIE),
    )
    return [str(value).strip() for value in candidates if value and str(value).strip()]


def _matches(provided: Iterable[str], configured: str) -> bool:
    if not configured:
        return False
    return any(hmac.compare_digest(token, configured) for token in provided)


def resolve_access(connection: HTTPConnection) -> AccessDecision:
    """
    Decide the access level of an HTTP request or websocket.

    AUTH_TOKEN grants full access, READONLY_TOKEN and a Cloudflare Access
    identity grant read-only access. With no token configured at all, only
    loopback clients under the insecure-local override get in.
    """
    config = load_gateway_config()
    provided = list(_provided_tokens(connection))
    if _matches(provided, config.auth_token):
        return AccessDecision(ACCESS_FULL)
    if _matches(provided, config.readonly_token):
        return AccessDecision(ACCESS_READONLY)
    if str(connection.headers.get(_CF_ACCESS_EMAIL_HEADER) or "").strip():
        return AccessDecision(ACCESS_READONLY)

    if not config.auth_token and not config.readonly_token:
        if _allow_insecure_local_without_api_key() and _is_loopback_request(connection):
            return AccessDecision(ACCESS_FULL)
        reason = (
            "insecure_local_override_requires_loopback"
            if _allow_insecure_local_without_api_key()
            else "api_key_not_configured"
        )
        return AccessDecision(None, reason)
    return AccessDecision(None, "invalid_or_missing_api_key")


def resolve_access_level(connection: HTTPConnection) -> Optional[str]:
    return resolve_access(connection).level


async def require_dashboard_access(request: Request) -> str:
    decision = resolve_access(request)
    if not decision.granted:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "dashboard_auth_failed",
                "reason": decision.reason,
            },
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decision.level


async def require_full_access(level: str = Depends(require_dashboard_access)) -> str:
    if level != ACCESS_FULL:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "read_only_access",
                "reason": "write_requires_full_access",
            },
        )
    return level
