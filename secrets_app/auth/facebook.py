"""
Facebook Login (OAuth 2 authorization code flow against the Graph API).
"""
from __future__ import annotations

from typing import Any, Dict
from urllib.parse import urlencode

import requests

from secrets_app.config import AppConfig

FACEBOOK_DIALOG_URL = "https://www.facebook.com/v19.0/dialog/oauth"
FACEBOOK_SCOPE = "email"
PROFILE_FIELDS = "id,name,email"
HTTP_TIMEOUT_SECONDS = 10


def build_authorize_url(cfg: AppConfig, *, redirect_uri: str, state: str) -> str:
    """Build the Facebook login dialog URL (scope: email)."""
    if not cfg.facebook_app_id:
        raise ValueError("Facebook app ID not configured")
    params = {
        "client_id": cfg.facebook_app_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": FACEBOOK_SCOPE,
        "state": state,
    }
    return f"{FACEBOOK_DIALOG_URL}?{urlencode(params)}"


def exchange_code_for_token(cfg: AppConfig, *, redirect_uri: str, code: str) -> str:
    """Exchange an authorization code for a user access token."""
    if not cfg.facebook_app_id or not cfg.facebook_app_secret:
        raise ValueError("Facebook app ID/secret not configured")

    r = requests.get(
        f"{cfg.facebook_graph_url}/oauth/access_token",
        params={
            "client_id": cfg.facebook_app_id,
            "client_secret": cfg.facebook_app_secret,
            "redirect_uri": redirect_uri,
            "code": code,
        },
        timeout=HTTP_TIMEOUT_SECONDS,
    )
    if r.status_code >= 400:
        raise ValueError(f"Token exchange failed (status={r.status_code})")
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid token response")
    token = str(data.get("access_token") or "").strip()
    if not token:
        raise ValueError("Token response missing access_token")
    return token


def fetch_profile(cfg: AppConfig, *, access_token: str) -> Dict[str, Any]:
    """Fetch `/me` for the token's user. Only `id` is relied upon."""
    r = requests.get(
        f"{cfg.facebook_graph_url}/me",
        params={"fields": PROFILE_FIELDS, "access_token": access_token},
        timeout=HTTP_TIMEOUT_SECONDS,
    )
    if r.status_code >= 400:
        raise ValueError(f"Profile request failed (status={r.status_code})")
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid profile response")
    return data
