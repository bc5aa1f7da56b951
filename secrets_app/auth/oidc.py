"""
Google sign-in over OpenID Connect (authorization code + PKCE).

Only the handshake lives here; mapping the resulting `sub` claim to a local
user is done in `secrets_app.auth.federation`.
"""
from __future__ import annotations

import base64
import hashlib
import time
from typing import Any, Dict, List, Tuple
from urllib.parse import urlencode

import jwt  # PyJWT
import requests

from secrets_app.config import AppConfig

GOOGLE_SCOPE = "openid email profile"
HTTP_TIMEOUT_SECONDS = 10
CACHE_TTL_SECONDS = 3600

# url -> (fetched_at, document)
_discovery_cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}
_jwks_cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}


def _cached_json(cache: Dict[str, Tuple[float, Dict[str, Any]]], url: str, what: str) -> Dict[str, Any]:
    now = time.time()
    hit = cache.get(url)
    if hit is not None and now - hit[0] < CACHE_TTL_SECONDS:
        return hit[1]

    r = requests.get(url, timeout=HTTP_TIMEOUT_SECONDS)
    r.raise_for_status()
    doc = r.json()
    if not isinstance(doc, dict):
        raise ValueError(f"Invalid {what}")
    cache[url] = (now, doc)
    return doc


def _get_discovery(discovery_url: str) -> Dict[str, Any]:
    return _cached_json(_discovery_cache, discovery_url, "OIDC discovery document")


def _get_jwks(jwks_uri: str) -> Dict[str, Any]:
    return _cached_json(_jwks_cache, jwks_uri, "JWKS")


def _discovered(cfg: AppConfig, key: str) -> str:
    value = str(_get_discovery(cfg.google_discovery_url).get(key) or "")
    if not value:
        raise ValueError(f"OIDC discovery missing {key}")
    return value


def _require_client(cfg: AppConfig, *, secret: bool = False) -> None:
    if not cfg.google_client_id or (secret and not cfg.google_client_secret):
        raise ValueError("Google client not configured")


def build_authorize_url(
    cfg: AppConfig,
    *,
    redirect_uri: str,
    state: str,
    nonce: str,
    code_challenge: str,
) -> str:
    """Google consent-screen URL asking for the profile and email scopes."""
    _require_client(cfg)
    query = urlencode(
        {
            "response_type": "code",
            "client_id": cfg.google_client_id,
            "redirect_uri": redirect_uri,
            "scope": GOOGLE_SCOPE,
            "state": state,
            "nonce": nonce,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
    )
    return f"{_discovered(cfg, 'authorization_endpoint')}?{query}"


def exchange_code_for_tokens(
    cfg: AppConfig,
    *,
    redirect_uri: str,
    code: str,
    code_verifier: str,
) -> Dict[str, Any]:
    """Trade the callback `code` (plus PKCE verifier) for Google's token response."""
    _require_client(cfg, secret=True)
    r = requests.post(
        _discovered(cfg, "token_endpoint"),
        data={
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": code_verifier,
            "redirect_uri": redirect_uri,
            "client_id": cfg.google_client_id,
            "client_secret": cfg.google_client_secret,
        },
        timeout=HTTP_TIMEOUT_SECONDS,
    )
    if r.status_code >= 400:
        # The body may echo the code or client details; keep it out of logs.
        raise ValueError(f"Token exchange failed (status={r.status_code})")
    tokens = r.json()
    if not isinstance(tokens, dict):
        raise ValueError("Invalid token response")
    return tokens


def _signing_key(jwks: Dict[str, Any], kid: str) -> Any:
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        raise ValueError("Invalid JWKS keys")
    for entry in keys:
        if isinstance(entry, dict) and entry.get("kid") == kid:
            return jwt.PyJWK(entry, algorithm="RS256").key
    raise ValueError(f"Unknown signing key (kid={kid!r})")


def _accepted_issuers(issuer: str) -> List[str]:
    # Google's tokens carry either `https://accounts.google.com` or the bare host.
    if issuer.startswith("https://"):
        return [issuer, issuer[len("https://"):]]
    return [issuer]


def validate_id_token(
    cfg: AppConfig,
    *,
    id_token: str,
    expected_nonce: str,
) -> Dict[str, Any]:
    """
    Verify a Google id_token and return its claims.

    Checks the RS256 signature against Google's published keys, then issuer,
    audience (our client id), expiry, and the nonce sent with the authorize
    request. Any failure raises ValueError or a jwt.PyJWTError.
    """
    _require_client(cfg)
    kid = str(jwt.get_unverified_header(id_token).get("kid") or "")
    if not kid:
        raise ValueError("ID token missing kid")
    key = _signing_key(_get_jwks(_discovered(cfg, "jwks_uri")), kid)

    claims = jwt.decode(
        id_token,
        key=key,
        algorithms=["RS256"],
        audience=cfg.google_client_id,
        issuer=_accepted_issuers(_discovered(cfg, "issuer")),
        options={"require": ["exp", "iat", "iss", "aud", "sub"]},
    )
    if not expected_nonce or claims.get("nonce") != expected_nonce:
        raise ValueError("Nonce mismatch")
    return claims


def pkce_challenge(verifier: str) -> str:
    """S256 code challenge for a PKCE verifier (RFC 7636)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
