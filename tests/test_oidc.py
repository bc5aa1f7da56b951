from __future__ import annotations

import json
import time
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from conftest import make_config
from secrets_app.auth import oidc

DISCOVERY = {
    "issuer": "https://accounts.google.com",
    "authorization_endpoint": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_endpoint": "https://oauth2.googleapis.com/token",
    "jwks_uri": "https://www.googleapis.com/oauth2/v3/certs",
}


@pytest.fixture
def google_cfg():
    return make_config(google_client_id="client-123", google_client_secret="shh")


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def jwks(signing_key):
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(signing_key.public_key()))
    jwk["kid"] = "k1"
    return {"keys": [jwk]}


def _id_token(signing_key, **overrides) -> str:
    now = int(time.time())
    claims = {
        "iss": DISCOVERY["issuer"],
        "aud": "client-123",
        "sub": "109876543210",
        "iat": now,
        "exp": now + 300,
        "nonce": "nonce-1",
        "email": "alice@example.com",
    }
    claims.update(overrides)
    return jwt.encode(claims, signing_key, algorithm="RS256", headers={"kid": "k1"})


def test_pkce_challenge_matches_rfc7636_vector() -> None:
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert oidc.pkce_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_build_authorize_url_requests_profile_and_email(google_cfg) -> None:
    with patch("secrets_app.auth.oidc._get_discovery", return_value=DISCOVERY):
        url = oidc.build_authorize_url(
            google_cfg,
            redirect_uri="http://localhost:3000/auth/google/secrets",
            state="st",
            nonce="nn",
            code_challenge="cc",
        )
    parsed = urlparse(url)
    assert parsed.netloc == "accounts.google.com"
    q = parse_qs(parsed.query)
    assert q["scope"] == ["openid email profile"]
    assert q["client_id"] == ["client-123"]
    assert q["redirect_uri"] == ["http://localhost:3000/auth/google/secrets"]
    assert q["state"] == ["st"]
    assert q["code_challenge_method"] == ["S256"]


def test_build_authorize_url_requires_client_id() -> None:
    with pytest.raises(ValueError):
        oidc.build_authorize_url(make_config(), redirect_uri="r", state="s", nonce="n", code_challenge="c")


def test_exchange_code_for_tokens_posts_verifier(google_cfg) -> None:
    resp = MagicMock(status_code=200)
    resp.json.return_value = {"id_token": "tok"}
    with patch("secrets_app.auth.oidc._get_discovery", return_value=DISCOVERY), patch(
        "secrets_app.auth.oidc.requests.post", return_value=resp
    ) as post:
        tokens = oidc.exchange_code_for_tokens(google_cfg, redirect_uri="r", code="c", code_verifier="v")
    assert tokens == {"id_token": "tok"}
    _, kwargs = post.call_args
    assert kwargs["data"]["code_verifier"] == "v"
    assert kwargs["data"]["grant_type"] == "authorization_code"
    assert kwargs["timeout"] == oidc.HTTP_TIMEOUT_SECONDS


def test_exchange_code_for_tokens_http_error(google_cfg) -> None:
    resp = MagicMock(status_code=400)
    with patch("secrets_app.auth.oidc._get_discovery", return_value=DISCOVERY), patch(
        "secrets_app.auth.oidc.requests.post", return_value=resp
    ):
        with pytest.raises(ValueError, match="status=400"):
            oidc.exchange_code_for_tokens(google_cfg, redirect_uri="r", code="c", code_verifier="v")


def test_validate_id_token_ok(google_cfg, signing_key, jwks) -> None:
    with patch("secrets_app.auth.oidc._get_discovery", return_value=DISCOVERY), patch(
        "secrets_app.auth.oidc._get_jwks", return_value=jwks
    ):
        claims = oidc.validate_id_token(google_cfg, id_token=_id_token(signing_key), expected_nonce="nonce-1")
    assert claims["sub"] == "109876543210"


def test_validate_id_token_nonce_mismatch(google_cfg, signing_key, jwks) -> None:
    with patch("secrets_app.auth.oidc._get_discovery", return_value=DISCOVERY), patch(
        "secrets_app.auth.oidc._get_jwks", return_value=jwks
    ):
        with pytest.raises(ValueError, match="Nonce"):
            oidc.validate_id_token(google_cfg, id_token=_id_token(signing_key), expected_nonce="other")


def test_validate_id_token_wrong_audience(google_cfg, signing_key, jwks) -> None:
    with patch("secrets_app.auth.oidc._get_discovery", return_value=DISCOVERY), patch(
        "secrets_app.auth.oidc._get_jwks", return_value=jwks
    ):
        with pytest.raises(jwt.InvalidAudienceError):
            oidc.validate_id_token(
                google_cfg, id_token=_id_token(signing_key, aud="someone-else"), expected_nonce="nonce-1"
            )


def test_validate_id_token_unknown_kid(google_cfg, signing_key) -> None:
    with patch("secrets_app.auth.oidc._get_discovery", return_value=DISCOVERY), patch(
        "secrets_app.auth.oidc._get_jwks", return_value={"keys": []}
    ):
        with pytest.raises(ValueError, match="kid"):
            oidc.validate_id_token(google_cfg, id_token=_id_token(signing_key), expected_nonce="nonce-1")


def test_discovery_is_cached(monkeypatch) -> None:
    monkeypatch.setattr(oidc, "_discovery_cache", {})
    resp = MagicMock()
    resp.json.return_value = DISCOVERY
    with patch("secrets_app.auth.oidc.requests.get", return_value=resp) as get:
        assert oidc._get_discovery("https://example.test/.well-known") == DISCOVERY
        assert oidc._get_discovery("https://example.test/.well-known") == DISCOVERY
    assert get.call_count == 1


def test_validate_id_token_accepts_bare_google_issuer(google_cfg, signing_key, jwks) -> None:
    with patch("secrets_app.auth.oidc._get_discovery", return_value=DISCOVERY), patch(
        "secrets_app.auth.oidc._get_jwks", return_value=jwks
    ):
        token = _id_token(signing_key, iss="accounts.google.com")
        assert oidc.validate_id_token(google_cfg, id_token=token, expected_nonce="nonce-1")["sub"] == "109876543210"

        with pytest.raises(jwt.InvalidIssuerError):
            oidc.validate_id_token(
                google_cfg, id_token=_id_token(signing_key, iss="https://evil.example"), expected_nonce="nonce-1"
            )


def test_jwks_cache_expires(monkeypatch, jwks) -> None:
    monkeypatch.setattr(oidc, "_jwks_cache", {})
    resp = MagicMock()
    resp.json.return_value = jwks
    clock = [1000.0]
    monkeypatch.setattr(oidc.time, "time", lambda: clock[0])
    with patch("secrets_app.auth.oidc.requests.get", return_value=resp) as get:
        oidc._get_jwks(DISCOVERY["jwks_uri"])
        clock[0] += oidc.CACHE_TTL_SECONDS - 1
        oidc._get_jwks(DISCOVERY["jwks_uri"])
        assert get.call_count == 1
        clock[0] += 2
        oidc._get_jwks(DISCOVERY["jwks_uri"])
    assert get.call_count == 2
