"""
auth/issuer.py -- Mint an access/refresh pair for a fully authenticated identity.

Every successful path (plain login, TOTP, out-of-band code, passwordless code,
rotation) ends here. The refresh record is written on the connection the caller
passes in, so callers that consume a single-use row first get both writes in
one transaction.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy.engine import Connection

from auth.models import ClientMeta, RefreshToken, TokenPair, User
from auth.store import AuthStore
from auth.tokens import Clock, TokenSigner, generate_opaque_token, hash_refresh_token, utc_now
from core.config import Settings

_REFRESH_TOKEN_BYTES = 32  # 64 hex chars on the wire


class TokenIssuer:
    def __init__(self, store: AuthStore, signer: TokenSigner, settings: Settings, clock: Clock = utc_now) -> None:
        self._store = store
        self._signer = signer
        self._secret_key = settings.secret_key
        self._access_ttl = settings.access_token_expire_seconds
        self._refresh_ttl = settings.refresh_token_expire_seconds
        self._clock = clock

    def issue(self, user: User, client: ClientMeta, conn: Connection | None = None) -> TokenPair:
        now = self._clock()
        roles = list(user.roles)
        access_token = self._signer.create_access_token(user.id, roles, self._access_ttl, now=now)
        raw_refresh = generate_opaque_token(_REFRESH_TOKEN_BYTES)
        self._store.add_refresh_token(
            RefreshToken(
                user_id=user.id,
                token_hash=hash_refresh_token(self._secret_key, raw_refresh),
                expires_at=now + timedelta(seconds=self._refresh_ttl),
                client=client,
            ),
            conn=conn,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=raw_refresh,
            roles=roles,
            expires_in=self._access_ttl,
        )
