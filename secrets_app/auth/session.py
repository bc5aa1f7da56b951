from __future__ import annotations

from typing import Any, Dict, Optional

from itsdangerous import BadData, URLSafeTimedSerializer

from secrets_app.auth.models import User
from secrets_app.config import AppConfig
from secrets_app.errors import AuthenticationFailure, NotFound, StoreUnavailable
from secrets_app.store.base import UserStore

SESSION_SALT = "secrets-app-session-v1"


def session_cookie_name(cfg: AppConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-secrets_session" if cfg.cookie_secure else "secrets_session"


def _serializer(cfg: AppConfig) -> Optional[URLSafeTimedSerializer]:
    if not cfg.session_secret:
        return None
    return URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)


def serialize_user(user: User) -> Dict[str, Any]:
    # Only the id goes into the cookie; the record is re-read on every request.
    return {"uid": user.id}


def encode_session(cfg: AppConfig, user: User) -> Optional[str]:
    s = _serializer(cfg)
    if s is None:
        return None
    return s.dumps(serialize_user(user))


def decode_session(cfg: AppConfig, value: str | None) -> Optional[Dict[str, Any]]:
    """Verify signature and age of a session cookie; return its payload or None."""
    if not value:
        return None
    s = _serializer(cfg)
    if s is None:
        return None
    try:
        data = s.loads(value, max_age=cfg.session_ttl_seconds)
    except BadData:
        # Any signature or age failure reads as no session.
        return None
    if not isinstance(data, dict):
        return None
    return data


async def deserialize_user(store: UserStore, payload: Optional[Dict[str, Any]]) -> User:
    """
    Re-fetch the full user record named by a session payload.

    Raises AuthenticationFailure for malformed payloads and for any lookup failure,
    so callers can treat the request as anonymous.
    """
    if not isinstance(payload, dict):
        raise AuthenticationFailure("Malformed session payload")
    uid = payload.get("uid")
    if not isinstance(uid, str) or not uid.strip():
        raise AuthenticationFailure("Session payload has no user id")
    try:
        return await store.find_by_id(uid.strip())
    except (NotFound, StoreUnavailable) as e:
        raise AuthenticationFailure(f"Cannot restore session user: {e}") from e


def _cookie_kwargs(cfg: AppConfig, value: str, max_age: int) -> dict:
    return dict(
        key=session_cookie_name(cfg),
        value=value,
        max_age=max_age,
        httponly=True,
        secure=cfg.cookie_secure,
        samesite="lax",
        path="/",
    )


def session_cookie_kwargs(cfg: AppConfig, value: str) -> dict:
    return _cookie_kwargs(cfg, value, cfg.session_ttl_seconds)


def clear_session_cookie_kwargs(cfg: AppConfig) -> dict:
    return _cookie_kwargs(cfg, "", 0)
