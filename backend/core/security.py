"""
StockPulse Security Utilities

JWT handling shared by the REST API and the push channel handshake.

Tokens are accepted from Auth0 (RS256, keys from the tenant JWKS) when it is
configured, and otherwise from the local HS256 secret. Outside local/dev/test
environments a configured Auth0 tenant disables the local fallback.
"""

import time
from datetime import datetime, timedelta, timezone

import httpx
import structlog
from jose import JWTError, jwt

from core.config import get_settings

logger = structlog.get_logger()

LOCAL_ENVS = frozenset({"", "local", "dev", "development", "test"})


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Sign a local HS256 token (dev tooling and tests)."""
    settings = get_settings()
    claims = dict(data)
    claims["exp"] = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=24))
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


class JWKSCache:
    """Per-issuer JWKS documents with a TTL; fetch failures are not cached."""

    def __init__(self):
        self._entries: dict[str, tuple[float, dict]] = {}

    def get(self, issuer: str, ttl_seconds: int) -> dict | None:
        now = time.time()
        cached = self._entries.get(issuer)
        if cached is not None and cached[0] > now:
            return cached[1]

        try:
            with httpx.Client(timeout=5.0) as client:
                response = client.get(f"{issuer}/.well-known/jwks.json")
                response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("auth.jwks_fetch_failed", issuer=issuer, error=str(exc))
            return None

        if not isinstance(document, dict) or not isinstance(document.get("keys"), list):
            return None
        self._entries[issuer] = (now + max(60, ttl_seconds), document)
        return document

    def clear(self) -> None:
        self._entries.clear()


jwks_cache = JWKSCache()


def auth0_issuer() -> str:
    """Issuer URL from AUTH0_ISSUER, else derived from AUTH0_DOMAIN; empty when unset."""
    settings = get_settings()
    if settings.auth0_issuer:
        return settings.auth0_issuer.rstrip("/")
    domain = settings.auth0_domain.strip()
    if not domain:
        return ""
    if not domain.startswith(("http://", "https://")):
        domain = f"https://{domain}"
    return domain.rstrip("/")


def _decode_auth0(token: str) -> dict | None:
    settings = get_settings()
    issuer = auth0_issuer()
    if not issuer or not settings.auth0_audience:
        return None

    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError:
        return None
    if not kid:
        return None

    jwks = jwks_cache.get(issuer, settings.auth0_jwks_cache_ttl_seconds)
    key = next((k for k in (jwks or {}).get("keys", []) if k.get("kid") == kid), None)
    if key is None:
        return None

    try:
        return jwt.decode(token, key, algorithms=["RS256"], audience=settings.auth0_audience, issuer=issuer)
    except JWTError:
        return None


def decode_access_token(token: str) -> dict | None:
    """Validated claims, or None for any invalid, expired or unverifiable token."""
    settings = get_settings()

    claims = _decode_auth0(token)
    if claims is not None:
        return claims

    auth0_configured = bool(settings.auth0_domain and settings.auth0_audience)
    if auth0_configured and settings.app_env.strip().lower() not in LOCAL_ENVS:
        return None

    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def actor_from_claims(claims: dict) -> str:
    """Identity recorded on ledger entries for a decoded token."""
    return str(claims.get("email") or claims.get("sub") or "unknown")


def role_from_claims(claims: dict) -> str | None:
    """``role`` claim, else the first entry of ``roles``."""
    role = claims.get("role")
    if role:
        return str(role)
    roles = claims.get("roles")
    if isinstance(roles, list) and roles:
        return str(roles[0])
    return None
