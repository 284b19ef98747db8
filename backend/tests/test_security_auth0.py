import base64
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from core import config as config_module
from core import security as security_module

ISSUER = "https://example-tenant.us.auth0.com"
AUDIENCE = "https://api.stockpulse.local"


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _build_rsa_fixture():
    from cryptography.hazmat.primitives.asymmetric import rsa

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public_numbers = private_key.public_key().public_numbers()
    kid = "test-kid"
    jwk = {
        "kty": "RSA",
        "kid": kid,
        "use": "sig",
        "alg": "RS256",
        "n": _b64url_uint(public_numbers.n),
        "e": _b64url_uint(public_numbers.e),
    }
    return private_key, jwk, kid


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    config_module.get_settings.cache_clear()
    security_module.jwks_cache.clear()
    yield
    config_module.get_settings.cache_clear()
    security_module.jwks_cache.clear()


@pytest.fixture
def production_auth0(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("AUTH0_DOMAIN", "example-tenant.us.auth0.com")
    monkeypatch.setenv("AUTH0_AUDIENCE", AUDIENCE)
    monkeypatch.setenv("JWT_SECRET", "unit-test-nondefault-secret")
    monkeypatch.setenv("DEBUG", "false")


def _rs256_token(private_key, kid, audience=AUDIENCE, **claims):
    payload = {
        "sub": "auth0|abc123",
        "aud": audience,
        "iss": ISSUER,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        **claims,
    }
    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def test_decode_access_token_auth0_rs256(monkeypatch, production_auth0):
    private_key, jwk, kid = _build_rsa_fixture()
    token = _rs256_token(private_key, kid, roles=["manager"])
    monkeypatch.setattr(security_module.jwks_cache, "get", lambda issuer, ttl: {"keys": [jwk]})

    payload = security_module.decode_access_token(token)
    assert payload is not None
    assert payload["sub"] == "auth0|abc123"
    assert security_module.role_from_claims(payload) == "manager"


def test_decode_access_token_auth0_invalid_audience(monkeypatch, production_auth0):
    private_key, jwk, kid = _build_rsa_fixture()
    token = _rs256_token(private_key, kid, audience="https://wrong-audience.example.com")
    monkeypatch.setattr(security_module.jwks_cache, "get", lambda issuer, ttl: {"keys": [jwk]})

    assert security_module.decode_access_token(token) is None


def test_production_auth0_rejects_local_tokens(monkeypatch, production_auth0):
    monkeypatch.setattr(security_module.jwks_cache, "get", lambda issuer, ttl: None)
    local_token = jwt.encode(
        {"sub": "local|user", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        "unit-test-nondefault-secret",
        algorithm="HS256",
    )

    assert security_module.decode_access_token(local_token) is None


def test_decode_access_token_rejects_expired_local_token(monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("AUTH0_DOMAIN", "")
    monkeypatch.setenv("AUTH0_AUDIENCE", "")
    monkeypatch.setenv("JWT_SECRET", "unit-test-local-secret")
    monkeypatch.setenv("JWT_ALGORITHM", "HS256")
    monkeypatch.setenv("DEBUG", "false")

    expired_token = jwt.encode(
        {"sub": "local|expired", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        "unit-test-local-secret",
        algorithm="HS256",
    )

    assert security_module.decode_access_token(expired_token) is None


def test_local_token_round_trip(monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("AUTH0_DOMAIN", "")

    token = security_module.create_access_token({"sub": "picker-1", "email": "picker@stockpulse.local"})
    claims = security_module.decode_access_token(token)
    assert claims["sub"] == "picker-1"
    assert security_module.actor_from_claims(claims) == "picker@stockpulse.local"
    assert security_module.actor_from_claims({"sub": "svc"}) == "svc"
    assert security_module.actor_from_claims({}) == "unknown"


def test_auth0_issuer_derived_from_domain(monkeypatch):
    monkeypatch.setenv("AUTH0_DOMAIN", "tenant.eu.auth0.com/")
    monkeypatch.setenv("AUTH0_ISSUER", "")
    assert security_module.auth0_issuer() == "https://tenant.eu.auth0.com"
