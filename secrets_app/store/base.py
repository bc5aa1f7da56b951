from __future__ import annotations

from typing import List, Protocol

from secrets_app.auth.models import Provider, User


class UserStore(Protocol):
    """
    Async user persistence interface.

    Implementations own uniqueness (username, provider ids) and the atomicity of
    `find_or_create`; callers never lock. Lookups raise `NotFound`, connectivity
    problems raise `StoreUnavailable`.
    """

    async def find_by_id(self, user_id: str) -> User:
        ...

    async def find_by_username(self, username: str) -> User:
        ...

    async def find_or_create(self, *, provider: Provider, provider_id: str, username: str) -> User:
        """
        Return the user whose `<provider>_id` equals `provider_id`, creating it if absent.

        Raises DuplicateUsername if creation collides with an unrelated username.
        """

    async def create_local(self, username: str, password_hash: str) -> User:
        """Insert a local-auth user. Raises DuplicateUsername if the username is taken."""

    async def save(self, user: User) -> None:
        """Persist the mutable fields of `user` (its secret)."""

    async def list_with_secrets(self) -> List[User]:
        ...

    async def close(self) -> None:
        ...
