"""
auth/errors.py -- Exception taxonomy for the authentication core.

Two families:
  User-facing rejections (401): the caller rendered a bad credential, code or
      token. Safe to surface with their code and message.
  Operator faults (AuthFault, 500): storage, delivery or signing broke. Logged
      with full context where they happen; the HTTP layer only ever shows the
      generic message.

Every class carries a stable machine-readable code so the API layer can build
its error envelope without inspecting messages.

Layer rule: no imports from api/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for everything the authentication core raises on purpose."""

    code: str = "auth_error"
    status_code: int = 400
    user_facing: bool = True
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# User-facing rejections
# ---------------------------------------------------------------------------


class InvalidUsernameError(AuthError):
    code = "invalid_username"
    status_code = 401
    default_message = "Invalid username."


class InvalidPasswordError(AuthError):
    code = "invalid_password"
    status_code = 401
    default_message = "Invalid password."


class AccountNotActiveError(AuthError):
    code = "account_not_active"
    status_code = 401
    default_message = "Account is not active."


class InvalidCodeError(AuthError):
    code = "invalid_code"
    status_code = 401
    default_message = "Code is invalid or has expired."


class InvalidTokenError(AuthError):
    code = "invalid_token"
    status_code = 401
    default_message = "Token is invalid or has expired."


# ---------------------------------------------------------------------------
# Operator faults
# ---------------------------------------------------------------------------


class AuthFault(AuthError):
    code = "server_error"
    status_code = 500
    user_facing = False
    default_message = "Server error, try again later."


class SendingFailedError(AuthFault):
    default_message = "Failed to deliver the one-time code."


class TokenGenerationFailedError(AuthFault):
    default_message = "Failed to generate tokens."


class PersistenceFailedError(AuthFault):
    default_message = "Storage operation failed."


class ServerError(AuthFault):
    pass


class SweepFailedError(PersistenceFailedError):
    """One or more collections could not be swept.

    failures maps collection name to the error text recorded for it.
    """

    def __init__(self, failures: dict[str, str]) -> None:
        self.failures = dict(failures)
        names = ", ".join(sorted(self.failures))
        super().__init__(f"Expiry sweep failed for: {names}")


__all__ = [
    "AuthError",
    "InvalidUsernameError",
    "InvalidPasswordError",
    "AccountNotActiveError",
    "InvalidCodeError",
    "InvalidTokenError",
    "AuthFault",
    "SendingFailedError",
    "TokenGenerationFailedError",
    "PersistenceFailedError",
    "ServerError",
    "SweepFailedError",
]
