"""
auth/credentials.py -- Primary credential check (username + password).

Rejection order: unknown username, inactive account, wrong password. The
password is only compared against the stored hash once the identity is known to
exist and be active; the early rejections still spend one bcrypt comparison on
the dummy hash so the three outcomes take the same time [C1].
"""

from __future__ import annotations

import logging

from auth.errors import AccountNotActiveError, InvalidPasswordError, InvalidUsernameError
from auth.models import User
from auth.store import AuthStore
from auth.tokens import burn_password_check, verify_password

logger = logging.getLogger("gatekeeper.auth.credentials")


class CredentialVerifier:
    def __init__(self, store: AuthStore) -> None:
        self._store = store

    def verify(self, username: str, password: str) -> User:
        """Return the full identity (roles included) or raise the specific rejection."""
        user = self._store.get_by_username(username)
        if user is None:
            burn_password_check(password)
            raise InvalidUsernameError()
        if not user.is_active:
            burn_password_check(password)
            logger.info("Login refused for inactive user_id=%s", user.id)
            raise AccountNotActiveError()
        if user.hashed_password is None:
            # Passwordless-only identity
            burn_password_check(password)
            raise InvalidPasswordError()
        if not verify_password(password, user.hashed_password):
            raise InvalidPasswordError()
        return user
