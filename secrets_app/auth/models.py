from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Literal, Optional

Provider = Literal["google", "facebook"]
PROVIDERS: tuple = ("google", "facebook")


@dataclass(frozen=True)
class User:
    """A user record (local, federated, or both)."""

    id: str
    username: str
    password_hash: Optional[str] = None  # bcrypt hash (salt embedded); None for federated-only users
    google_id: Optional[str] = None
    facebook_id: Optional[str] = None
    secret: Optional[str] = None  # None = never submitted; "" is a real value
    created_at: Optional[datetime] = None

    @property
    def is_local(self) -> bool:
        return self.password_hash is not None

    def with_secret(self, secret: str) -> "User":
        return replace(self, secret=secret)


@dataclass(frozen=True)
class ProviderProfile:
    """The part of a provider profile we persist: just the provider's stable user id."""

    provider: Provider
    id: str
