from __future__ import annotations


class SecretsAppError(Exception):
    """Base class for errors the route layer turns into redirects."""


class DuplicateUsername(SecretsAppError):
    """Registration (or federated create) hit an existing username."""


class InvalidCredentials(SecretsAppError):
    """Unknown username, missing password hash, or wrong password."""


class AuthenticationFailure(SecretsAppError):
    """Provider handshake failed, or a session could not be restored."""


class NotFound(SecretsAppError):
    """No user record matches the lookup."""


class StoreUnavailable(SecretsAppError):
    """The database could not be reached or dropped the connection."""
