from __future__ import annotations

import logging
from functools import lru_cache

import bcrypt
from starlette.concurrency import run_in_threadpool

from secrets_app.auth.models import User
from secrets_app.errors import DuplicateUsername, InvalidCredentials, NotFound
from secrets_app.store.base import UserStore

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 12
# bcrypt only reads the first 72 bytes; newer releases reject anything longer.
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    """
    Hash password with bcrypt (cost factor 12).

    Args:
        password: Plain text password

    Returns:
        Bcrypt hash string (salt included)
    """
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash with constant-time comparison.

    Args:
        password: Plain text password
        password_hash: Bcrypt hash

    Returns:
        True if password matches, False otherwise
    """
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Invalid hash format
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password("dummy-password-for-timing")


async def register_local(store: UserStore, username: str, password: str) -> User:
    """
    Create a local user with a freshly salted bcrypt hash.

    Raises:
        InvalidCredentials: empty username or password, or a password over MAX_PASSWORD_BYTES
        DuplicateUsername: username already taken
    """
    username = (username or "").strip()
    if not username or not password:
        raise InvalidCredentials("Missing username or password")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise InvalidCredentials(f"Password longer than {MAX_PASSWORD_BYTES} bytes")

    password_hash = await run_in_threadpool(hash_password, password)
    try:
        user = await store.create_local(username, password_hash)
    except DuplicateUsername:
        logger.info("Registration rejected: username %r already exists", username)
        raise
    logger.info("Registered local user %s (%s)", user.id, username)
    return user


async def authenticate_local(store: UserStore, username: str, password: str) -> User:
    """
    Verify a username/password pair.

    Raises:
        InvalidCredentials: unknown username, federated-only account, or wrong password
    """
    username = (username or "").strip()
    if not username or not password:
        raise InvalidCredentials("Missing username or password")

    try:
        user = await store.find_by_username(username)
    except NotFound:
        # Same bcrypt cost as a real check so response time does not reveal the username.
        await run_in_threadpool(verify_password, password, _dummy_hash())
        raise InvalidCredentials("Invalid username or password") from None

    if not user.password_hash:
        await run_in_threadpool(verify_password, password, _dummy_hash())
        raise InvalidCredentials("Invalid username or password")

    if not await run_in_threadpool(verify_password, password, user.password_hash):
        raise InvalidCredentials("Invalid username or password")

    return user
