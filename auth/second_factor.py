"""
auth/second_factor.py -- Decide and complete the second step of a login.

After the password check the orchestrator looks at the identity's second factor:

  NoSecondFactor   -> tokens straight away.
  TotpFactor       -> a short-lived pending token; full tokens only once a
                      valid authenticator code comes back with it.
  OutOfBandFactor  -> a challenge (numeric code + request id) stored and
                      delivered in one transaction; tokens once the code and
                      request id come back together.

Passwordless login reuses the out-of-band machinery with its own purpose, TTL
and mail template, and skips the password step. An accepted login code stands
in for the password only: an identity with a second factor is sent through the
same dispatch as a password login.

Challenge completion consumes the row and issues tokens on one connection. The
consume is a compare-and-delete, so of two concurrent completions only the one
whose delete hit a row goes on to issue.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.engine import Connection

from auth.errors import (
    AccountNotActiveError,
    InvalidCodeError,
    InvalidTokenError,
    InvalidUsernameError,
    SendingFailedError,
    ServerError,
)
from auth.issuer import TokenIssuer
from auth.models import (
    Challenge,
    ChallengeIssued,
    ChallengePurpose,
    Channel,
    ClientMeta,
    LoginResult,
    NoSecondFactor,
    OutOfBandFactor,
    TokenPair,
    TotpFactor,
    TotpPending,
    User,
)
from auth.notify import NotificationError, Notifier, TemplateKind
from auth.store import AuthStore
from auth.tokens import Clock, TokenSigner, generate_numeric_code, generate_opaque_token, utc_now, verify_totp
from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.second_factor")

_REQUEST_ID_BYTES = 16


class SecondFactorOrchestrator:
    def __init__(
        self,
        store: AuthStore,
        issuer: TokenIssuer,
        signer: TokenSigner,
        notifier: Notifier,
        settings: Settings,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._signer = signer
        self._notifier = notifier
        self._clock = clock
        self._pending_ttl = settings.pending_token_expire_seconds
        self._two_factor_ttl = settings.two_factor_code_ttl_seconds
        self._passwordless_ttl = settings.passwordless_code_ttl_seconds
        self._code_length = settings.code_length
        self._totp_window = settings.totp_valid_window

    # ------------------------------------------------------------------
    # Password accepted -- what next?
    # ------------------------------------------------------------------

    def dispatch(self, user: User, client: ClientMeta) -> LoginResult:
        factor = user.second_factor
        if isinstance(factor, NoSecondFactor):
            return self._issuer.issue(user, client)
        if isinstance(factor, TotpFactor):
            token = self._signer.create_pending_token(user.id, self._pending_ttl, now=self._clock())
            return TotpPending(pending_token=token, expires_in=self._pending_ttl)
        if isinstance(factor, OutOfBandFactor):
            return self._issue_challenge(
                user,
                factor.channel,
                ChallengePurpose.TWO_FACTOR,
                TemplateKind.TWO_FACTOR_LOGIN,
                self._two_factor_ttl,
                client,
            )
        raise ServerError(f"Unhandled second factor {type(factor).__name__}")

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def complete_totp(self, pending_token: str, code: str, client: ClientMeta) -> TokenPair:
        """Exchange a pending token plus a current authenticator code for tokens."""
        user_id = self._signer.decode_pending_token(pending_token)
        user = self._store.get_by_id(user_id)
        if user is None:
            raise InvalidTokenError()
        if not user.is_active:
            raise AccountNotActiveError()
        factor = user.second_factor
        if not isinstance(factor, TotpFactor):
            # Second factor was switched after the pending token was handed out
            raise InvalidTokenError()
        if not verify_totp(factor.secret, code, at=self._clock(), window=self._totp_window):
            raise InvalidCodeError()
        return self._issuer.issue(user, client)

    def complete_out_of_band(self, code: str, request_id: str, client: ClientMeta) -> TokenPair:
        """Exchange an emailed second-factor code and its request id for tokens."""
        return self._complete_challenge(ChallengePurpose.TWO_FACTOR, request_id, code, client)

    # ------------------------------------------------------------------
    # Passwordless
    # ------------------------------------------------------------------

    def start_passwordless(self, login: str, channel: Channel, client: ClientMeta) -> ChallengeIssued:
        """Send a login code to the identity named by username or email."""
        user = self._store.get_by_login(login)
        if user is None:
            raise InvalidUsernameError()
        if not user.is_active:
            raise AccountNotActiveError()
        return self._issue_challenge(
            user,
            channel,
            ChallengePurpose.PASSWORDLESS,
            TemplateKind.EMAIL_LOGIN,
            self._passwordless_ttl,
            client,
        )

    def complete_passwordless(self, code: str, request_id: str, client: ClientMeta | None = None) -> LoginResult:
        """Exchange a passwordless code for tokens, or for the identity's second step.

        Without client, the result is bound to the client that asked for the code.
        """
        if not request_id or not code:
            raise InvalidCodeError()
        now = self._clock()
        with self._store.transaction() as conn:
            challenge, user = self._consume_challenge(ChallengePurpose.PASSWORDLESS, request_id, code, now, conn)
            client = client or challenge.client
            if isinstance(user.second_factor, NoSecondFactor):
                return self._issuer.issue(user, client, conn=conn)
        # The consume has committed; a second-step challenge is written on its own transaction.
        logger.info("Passwordless code accepted for user_id=%s, second factor required", user.id)
        return self.dispatch(user, client)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _issue_challenge(
        self,
        user: User,
        channel: Channel,
        purpose: ChallengePurpose,
        kind: TemplateKind,
        ttl_seconds: int,
        client: ClientMeta,
    ) -> ChallengeIssued:
        challenge = Challenge(
            user_id=user.id,
            request_id=generate_opaque_token(_REQUEST_ID_BYTES),
            code=generate_numeric_code(self._code_length),
            purpose=purpose,
            channel=channel,
            expires_at=self._clock() + timedelta(seconds=ttl_seconds),
            client=client,
        )
        # The row only commits once delivery has returned normally. On SQLite the
        # write lock is held across the send; AuthStore waits out the lock for
        # longer than the notifier timeout.
        with self._store.transaction() as conn:
            self._store.add_challenge(challenge, conn=conn)
            try:
                self._notifier.send(user, challenge.code, kind)
            except NotificationError as exc:
                logger.error("Delivery of %s code to user_id=%s failed: %s", kind.value, user.id, exc)
                raise SendingFailedError() from exc
        logger.info("Issued %s challenge for user_id=%s via %s", purpose.value, user.id, channel.value)
        return ChallengeIssued(request_id=challenge.request_id, channel=channel)

    def _complete_challenge(
        self,
        purpose: ChallengePurpose,
        request_id: str,
        code: str,
        client: ClientMeta | None,
    ) -> TokenPair:
        if not request_id or not code:
            raise InvalidCodeError()
        now = self._clock()
        with self._store.transaction() as conn:
            challenge, user = self._consume_challenge(purpose, request_id, code, now, conn)
            return self._issuer.issue(user, client or challenge.client, conn=conn)

    def _consume_challenge(
        self,
        purpose: ChallengePurpose,
        request_id: str,
        code: str,
        now: datetime,
        conn: Connection,
    ) -> tuple[Challenge, User]:
        challenge = self._store.consume_challenge(request_id, code.strip(), purpose, now, conn)
        if challenge is None:
            raise InvalidCodeError()
        user = self._store.get_by_id(challenge.user_id, conn=conn)
        if user is None:
            raise InvalidCodeError()
        if not user.is_active:
            raise AccountNotActiveError()
        return challenge, user
