from __future__ import annotations

import logging
from typing import Any, Mapping

import jwt  # PyJWT
import requests
from starlette.concurrency import run_in_threadpool

from secrets_app.auth import facebook, oidc
from secrets_app.auth.models import PROVIDERS, ProviderProfile, User
from secrets_app.config import AppConfig
from secrets_app.errors import AuthenticationFailure, DuplicateUsername
from secrets_app.store.base import UserStore

logger = logging.getLogger(__name__)

# Errors a provider handshake can raise; all of them mean "login failed".
_HANDSHAKE_ERRORS = (ValueError, KeyError, requests.RequestException, jwt.PyJWTError)


def validate_profile(provider: str, raw: Mapping[str, Any]) -> ProviderProfile:
    """
    Reduce a provider payload to the typed profile we persist.

    Google id_token claims carry the user id in `sub`; Facebook's `/me` in `id`.
    """
    if provider not in PROVIDERS:
        raise AuthenticationFailure(f"Unknown provider: {provider}")
    if not isinstance(raw, Mapping):
        raise AuthenticationFailure(f"Invalid {provider} profile payload")

    key = "sub" if provider == "google" else "id"
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise AuthenticationFailure(f"{provider} profile has no {key!r}")
    profile_id = str(value).strip()
    if not profile_id:
        raise AuthenticationFailure(f"{provider} profile has an empty {key!r}")
    return ProviderProfile(provider=provider, id=profile_id)  # type: ignore[arg-type]


async def complete_login(store: UserStore, profile: ProviderProfile) -> User:
    """
    Find-or-create the local user for a provider profile.

    Matches on `<provider>_id`; a new record gets `username = profile.id`. No other
    profile data (email, display name) is stored.
    """
    try:
        user = await store.find_or_create(provider=profile.provider, provider_id=profile.id, username=profile.id)
    except DuplicateUsername as e:
        raise AuthenticationFailure(str(e)) from e
    logger.info("Federated login via %s for user %s", profile.provider, user.id)
    return user


def _google_profile(cfg: AppConfig, *, code: str, redirect_uri: str, code_verifier: str, nonce: str) -> ProviderProfile:
    tokens = oidc.exchange_code_for_tokens(cfg, redirect_uri=redirect_uri, code=code, code_verifier=code_verifier)
    id_token = str(tokens.get("id_token") or "").strip()
    if not id_token:
        raise ValueError("Missing id_token in token response")
    claims = oidc.validate_id_token(cfg, id_token=id_token, expected_nonce=nonce)
    return validate_profile("google", claims)


def _facebook_profile(cfg: AppConfig, *, code: str, redirect_uri: str) -> ProviderProfile:
    access_token = facebook.exchange_code_for_token(cfg, redirect_uri=redirect_uri, code=code)
    raw = facebook.fetch_profile(cfg, access_token=access_token)
    return validate_profile("facebook", raw)


async def fetch_google_profile(
    cfg: AppConfig, *, code: str, redirect_uri: str, code_verifier: str, nonce: str
) -> ProviderProfile:
    try:
        return await run_in_threadpool(
            _google_profile, cfg, code=code, redirect_uri=redirect_uri, code_verifier=code_verifier, nonce=nonce
        )
    except _HANDSHAKE_ERRORS as e:
        raise AuthenticationFailure(f"Google login failed: {e}") from e


async def fetch_facebook_profile(cfg: AppConfig, *, code: str, redirect_uri: str) -> ProviderProfile:
    try:
        return await run_in_threadpool(_facebook_profile, cfg, code=code, redirect_uri=redirect_uri)
    except _HANDSHAKE_ERRORS as e:
        raise AuthenticationFailure(f"Facebook login failed: {e}") from e
