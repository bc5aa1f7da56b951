"""
Pytest config.

Local imports like `import secrets_app` rely on the repo root being on sys.path. When
invoking a global `pytest` entrypoint without an editable install that doesn't happen
reliably during collection, so we pin it here.

Route and auth tests run against `InMemoryUserStore`, which honours the same contract
as the Postgres store (NotFound, DuplicateUsername, atomic find_or_create).
"""

from __future__ import annotations

import asyncio
import sys
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from secrets_app.auth.models import User  # noqa: E402
from secrets_app.config import AppConfig  # noqa: E402
from secrets_app.errors import DuplicateUsername, NotFound, StoreUnavailable  # noqa: E402

TEST_SESSION_SECRET = "test-secret-key-for-testing-purposes-only"


class InMemoryUserStore:
    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.available = True
        self.fail_saves = False
        self._lock = asyncio.Lock()

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailable("store is down")

    async def find_by_id(self, user_id: str) -> User:
        self._check()
        try:
            return self.users[user_id]
        except KeyError:
            raise NotFound(user_id) from None

    async def find_by_username(self, username: str) -> User:
        self._check()
        for u in self.users.values():
            if u.username == username:
                return u
        raise NotFound(username)

    def _insert(self, user: User) -> User:
        if any(u.username == user.username for u in self.users.values()):
            raise DuplicateUsername(user.username)
        self.users[user.id] = user
        return user

    async def find_or_create(self, *, provider: str, provider_id: str, username: str) -> User:
        self._check()
        field = f"{provider}_id"
        async with self._lock:
            for u in self.users.values():
                if getattr(u, field) == provider_id:
                    return u
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                created_at=datetime.now(timezone.utc),
                **{field: provider_id},
            )
            return self._insert(user)

    async def create_local(self, username: str, password_hash: str) -> User:
        self._check()
        async with self._lock:
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                password_hash=password_hash,
                created_at=datetime.now(timezone.utc),
            )
            return self._insert(user)

    async def save(self, user: User) -> None:
        self._check()
        if self.fail_saves:
            raise StoreUnavailable("save failed")
        if user.id not in self.users:
            raise NotFound(user.id)
        self.users[user.id] = replace(self.users[user.id], secret=user.secret)

    async def list_with_secrets(self) -> List[User]:
        self._check()
        return [u for u in self.users.values() if u.secret is not None]

    async def close(self) -> None:
        return None


def make_config(**overrides) -> AppConfig:
    values = dict(
        host="127.0.0.1",
        port=3000,
        public_base_url="http://localhost:3000",
        session_secret=TEST_SESSION_SECRET,
        session_ttl_seconds=3600,
        cookie_secure=False,
        database_url="postgresql://localhost:5432/secrets_test",
        db_connect_timeout=5,
        db_auto_migrate=False,
    )
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture(autouse=True)
def _fast_bcrypt(monkeypatch: pytest.MonkeyPatch) -> None:
    # Cost 4 is the bcrypt minimum; keeps the suite fast without changing behaviour.
    monkeypatch.setattr("secrets_app.auth.local.BCRYPT_ROUNDS", 4)


@pytest.fixture
def cfg() -> AppConfig:
    return make_config()


@pytest.fixture
def store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def app(cfg: AppConfig, store: InMemoryUserStore):
    from secrets_app.api.server import create_app

    return create_app(cfg, store=store)


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app, follow_redirects=False)
