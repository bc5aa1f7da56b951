from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request

from secrets_app.auth.models import User
from secrets_app.auth.session import decode_session, deserialize_user, session_cookie_name
from secrets_app.errors import AuthenticationFailure

logger = logging.getLogger(__name__)


async def authenticate_request(request: Request) -> Optional[User]:
    """
    Restore the session user for a request, or None if anonymous.

    Fails closed: a missing, tampered, expired or dangling session is anonymous.
    """
    cfg = request.app.state.config
    store = request.app.state.store

    payload = decode_session(cfg, request.cookies.get(session_cookie_name(cfg)))
    if payload is None:
        return None

    try:
        return await deserialize_user(store, payload)
    except AuthenticationFailure as e:
        logger.info("Ignoring session cookie: %s", str(e))
        return None


def current_user(request: Request) -> Optional[User]:
    """User attached by the request middleware (None when anonymous)."""
    return getattr(request.state, "user", None)
