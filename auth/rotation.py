"""
auth/rotation.py -- Exchange a refresh token for a fresh access/refresh pair.

A refresh token is good for exactly one rotation. The old record is consumed
and the replacement written on the same connection, so either both happen or
neither does: a failed rotation leaves the presented token valid, and a
successful one leaves only the new token.
"""

from __future__ import annotations

import logging

from auth.errors import AccountNotActiveError, InvalidTokenError
from auth.issuer import TokenIssuer
from auth.models import ClientMeta, TokenPair
from auth.store import AuthStore
from auth.tokens import Clock, hash_refresh_token, utc_now
from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.rotation")


class RefreshRotator:
    def __init__(self, store: AuthStore, issuer: TokenIssuer, settings: Settings, clock: Clock = utc_now) -> None:
        self._store = store
        self._issuer = issuer
        self._secret_key = settings.secret_key
        self._clock = clock

    def rotate(self, refresh_token: str, client: ClientMeta) -> TokenPair:
        if not refresh_token:
            raise InvalidTokenError()
        token_hash = hash_refresh_token(self._secret_key, refresh_token)
        now = self._clock()

        record = self._store.get_refresh_token(token_hash, now)
        if record is None:
            raise InvalidTokenError()
        user = self._store.get_by_id(record.user_id)
        if user is None:
            raise InvalidTokenError()
        if not user.is_active:
            logger.info("Refresh refused for inactive user_id=%s", user.id)
            raise AccountNotActiveError()

        with self._store.transaction() as conn:
            # Lost the race to a concurrent rotation of the same token
            if self._store.consume_refresh_token(token_hash, now, conn) is None:
                raise InvalidTokenError()
            return self._issuer.issue(user, client, conn=conn)
