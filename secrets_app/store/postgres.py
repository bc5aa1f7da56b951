from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Sequence

import psycopg
from psycopg import errors as pg_errors
from psycopg import sql

from secrets_app.auth.models import PROVIDERS, Provider, User
from secrets_app.errors import DuplicateUsername, NotFound, StoreUnavailable

logger = logging.getLogger(__name__)

_COLUMNS = "id::text, username, password_hash, google_id, facebook_id, secret, created_at"

# Provider -> column holding that provider's profile id. Never interpolate anything else.
_PROVIDER_COLUMNS = {
    "google": "google_id",
    "facebook": "facebook_id",
}


def _row_to_user(row: Sequence[Any]) -> User:
    user_id, username, password_hash, google_id, facebook_id, secret, created_at = row
    return User(
        id=str(user_id),
        username=username,
        password_hash=password_hash,
        google_id=google_id,
        facebook_id=facebook_id,
        secret=secret,
        created_at=created_at,
    )


def _provider_column(provider: Provider) -> str:
    if provider not in PROVIDERS:
        raise ValueError(f"Unknown provider: {provider}")
    return _PROVIDER_COLUMNS[provider]


class PostgresUserStore:
    """
    `UserStore` backed by the `users` table.

    One short-lived autocommit connection per operation. Every write is a single
    statement, so uniqueness and find-or-create atomicity come from the table's
    unique constraints and `INSERT ... ON CONFLICT`, not from application locks.
    """

    def __init__(self, dsn: str, *, connect_timeout: int = 10) -> None:
        self._dsn = dsn
        self._connect_timeout = connect_timeout

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[psycopg.AsyncConnection]:
        try:
            conn = await psycopg.AsyncConnection.connect(
                self._dsn,
                autocommit=True,
                connect_timeout=self._connect_timeout,
            )
        except (psycopg.OperationalError, psycopg.InterfaceError) as e:
            raise StoreUnavailable(f"Cannot connect to Postgres: {e}") from e
        try:
            yield conn
        except (psycopg.OperationalError, psycopg.InterfaceError) as e:
            raise StoreUnavailable(f"Postgres operation failed: {e}") from e
        finally:
            await conn.close()

    async def _fetchone(self, query: Any, params: Sequence[Any]) -> Optional[Sequence[Any]]:
        async with self._connection() as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchone()

    async def find_by_id(self, user_id: str) -> User:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            raise NotFound(f"No user with id {user_id!r}") from None
        row = await self._fetchone(f"SELECT {_COLUMNS} FROM users WHERE id = %s", (user_id,))
        if not row:
            raise NotFound(f"No user with id {user_id!r}")
        return _row_to_user(row)

    async def find_by_username(self, username: str) -> User:
        row = await self._fetchone(f"SELECT {_COLUMNS} FROM users WHERE username = %s", (username,))
        if not row:
            raise NotFound(f"No user named {username!r}")
        return _row_to_user(row)

    async def find_or_create(self, *, provider: Provider, provider_id: str, username: str) -> User:
        column = sql.Identifier(_provider_column(provider))
        # The no-op DO UPDATE makes RETURNING yield the existing row on conflict.
        query = sql.SQL(
            "INSERT INTO users (username, {col}) VALUES (%s, %s) "
            "ON CONFLICT ({col}) DO UPDATE SET {col} = EXCLUDED.{col} "
            "RETURNING " + _COLUMNS
        ).format(col=column)
        try:
            row = await self._fetchone(query, (username, provider_id))
        except pg_errors.UniqueViolation as e:
            # A concurrent first login for the same profile can commit its row while this
            # insert waits on the username index; that row is the one to return.
            existing = await self._fetchone(
                sql.SQL("SELECT " + _COLUMNS + " FROM users WHERE {col} = %s").format(col=column),
                (provider_id,),
            )
            if existing:
                return _row_to_user(existing)
            raise DuplicateUsername(f"Username {username!r} already belongs to another account") from e
        if not row:
            raise StoreUnavailable("find_or_create returned no row")
        return _row_to_user(row)

    async def create_local(self, username: str, password_hash: str) -> User:
        try:
            row = await self._fetchone(
                f"INSERT INTO users (username, password_hash) VALUES (%s, %s) RETURNING {_COLUMNS}",
                (username, password_hash),
            )
        except pg_errors.UniqueViolation as e:
            raise DuplicateUsername(f"Username {username!r} is already registered") from e
        if not row:
            raise StoreUnavailable("create_local returned no row")
        return _row_to_user(row)

    async def save(self, user: User) -> None:
        row = await self._fetchone(
            "UPDATE users SET secret = %s WHERE id = %s RETURNING id",
            (user.secret, user.id),
        )
        if not row:
            raise NotFound(f"No user with id {user.id!r}")

    async def list_with_secrets(self) -> List[User]:
        async with self._connection() as conn:
            cur = await conn.execute(
                f"SELECT {_COLUMNS} FROM users WHERE secret IS NOT NULL ORDER BY created_at, id",
            )
            rows = await cur.fetchall()
        return [_row_to_user(r) for r in rows]

    async def close(self) -> None:
        # Connections are per-operation; nothing is held between requests.
        return None
