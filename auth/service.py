"""
auth/service.py -- Facade over the authentication components.

Pattern: Facade. AuthService wires the credential verifier, second-factor
orchestrator, token issuer, refresh rotator and expiry sweeper together from
one Settings instance, and is the only object the HTTP layer and the CLI hold.

Primary login path:
    CredentialVerifier -> SecondFactorOrchestrator.dispatch -> TokenIssuer
Independent entry points:
    refresh         -> RefreshRotator -> TokenIssuer
    passwordless    -> SecondFactorOrchestrator -> TokenIssuer
    sweep           -> ExpirySweeper

Usage:
    service = AuthService(store, build_notifier(settings), settings)
    result = service.login("alice", "secret", ClientMeta("10.0.0.1", "curl/8"))
    if isinstance(result, TokenPair): ...
"""

from __future__ import annotations

import logging

from auth.credentials import CredentialVerifier
from auth.errors import AccountNotActiveError, InvalidCodeError, InvalidTokenError
from auth.issuer import TokenIssuer
from auth.models import (
    ChallengeIssued,
    Channel,
    ClientMeta,
    LoginResult,
    SweepResult,
    TokenPair,
    TotpEnrollment,
    TwoFactorMethod,
    User,
)
from auth.notify import Notifier
from auth.rotation import RefreshRotator
from auth.second_factor import SecondFactorOrchestrator
from auth.store import AuthStore
from auth.sweeper import ExpirySweeper
from auth.tokens import Clock, TokenSigner, generate_totp_secret, hash_refresh_token, totp_provisioning_uri, utc_now
from core.config import Settings

logger = logging.getLogger("gatekeeper.auth")


class AuthService:
    def __init__(self, store: AuthStore, notifier: Notifier, settings: Settings, clock: Clock = utc_now) -> None:
        self.store = store
        self.settings = settings
        self._signer = TokenSigner(settings.secret_key)
        self._verifier = CredentialVerifier(store)
        self._issuer = TokenIssuer(store, self._signer, settings, clock)
        self._second_factor = SecondFactorOrchestrator(store, self._issuer, self._signer, notifier, settings, clock)
        self._rotator = RefreshRotator(store, self._issuer, settings, clock)
        self._sweeper = ExpirySweeper(store, clock)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, username: str, password: str, client: ClientMeta) -> LoginResult:
        """Check username/password, then hand out tokens or start the second step."""
        user = self._verifier.verify(username, password)
        result = self._second_factor.dispatch(user, client)
        logger.info("Password accepted for user_id=%s; next step: %s", user.id, type(result).__name__)
        return result

    def complete_second_factor(
        self, method: TwoFactorMethod, code: str, ticket: str, client: ClientMeta
    ) -> TokenPair:
        """Finish a two-factor login.

        ticket is the pending token for TOTP and the request id for EMAIL.
        """
        if method is TwoFactorMethod.TOTP:
            tokens = self._second_factor.complete_totp(ticket, code, client)
        elif method is TwoFactorMethod.EMAIL:
            tokens = self._second_factor.complete_out_of_band(code, ticket, client)
        else:
            raise InvalidCodeError()
        logger.info("Second factor %s completed", method.value)
        return tokens

    def refresh(self, refresh_token: str, client: ClientMeta) -> TokenPair:
        return self._rotator.rotate(refresh_token, client)

    def start_passwordless_login(
        self, login: str, channel: Channel = Channel.EMAIL, client: ClientMeta | None = None
    ) -> ChallengeIssued:
        return self._second_factor.start_passwordless(login, channel, client or ClientMeta())

    def complete_passwordless_login(self, code: str, request_id: str) -> LoginResult:
        """Tokens for an identity without a second factor, else its second step."""
        return self._second_factor.complete_passwordless(code, request_id)

    def logout(self, user_id: int, refresh_token: str) -> bool:
        """Revoke one of the caller's own refresh tokens. False if it was not theirs or already gone."""
        revoked = self.store.revoke_refresh_token(user_id, hash_refresh_token(self.settings.secret_key, refresh_token))
        logger.info("Logout for user_id=%s (revoked=%s)", user_id, revoked)
        return revoked

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def authenticate_access_token(self, token: str) -> User:
        """Resolve a bearer access token to the live identity it was issued for."""
        claims = self._signer.decode_access_token(token)
        user = self.store.get_by_id(int(claims["user_id"]))
        if user is None:
            raise InvalidTokenError()
        if not user.is_active:
            raise AccountNotActiveError()
        return user

    # ------------------------------------------------------------------
    # Second-factor enrollment
    # ------------------------------------------------------------------

    def enroll_totp(self, user_id: int) -> TotpEnrollment:
        user = self._require_user(user_id)
        secret = generate_totp_secret()
        self.store.set_second_factor(user_id, TwoFactorMethod.TOTP, totp_secret=secret)
        logger.info("TOTP enrolled for user_id=%s", user_id)
        return TotpEnrollment(
            secret=secret,
            provisioning_uri=totp_provisioning_uri(secret, user.email or user.username, self.settings.totp_issuer),
        )

    def set_out_of_band(self, user_id: int, channel: Channel = Channel.EMAIL) -> None:
        self._require_user(user_id)
        self.store.set_second_factor(user_id, TwoFactorMethod(channel.value))
        logger.info("Out-of-band second factor %s enabled for user_id=%s", channel.value, user_id)

    def disable_second_factor(self, user_id: int) -> None:
        self._require_user(user_id)
        self.store.set_second_factor(user_id, TwoFactorMethod.NONE)
        logger.info("Second factor disabled for user_id=%s", user_id)

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise InvalidTokenError()
        return user

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def sweep(self, retention_days: int | None = None) -> SweepResult:
        days = self.settings.retention_days if retention_days is None else retention_days
        return await self._sweeper.sweep(days)
