"""
tests/test_second_factor.py -- Second-factor dispatch and completion.

Covers:
  - EMAIL challenge: one delivery, tokens on the matching code, single use
  - expiry boundary: a challenge whose expiry equals now is rejected
  - delivery failure rolls the challenge back (no undelivered codes on disk)
  - TOTP: pending token, code check, inactive/switched identities
  - passwordless: lookup by username or email, short TTL, stored client reused
  - passwordless login still requires an enrolled second factor
  - a code issued for one flow never completes the other
  - two concurrent completions of one challenge: exactly one wins
"""

from __future__ import annotations

import threading

import pyotp
import pytest

from auth.errors import (
    AccountNotActiveError,
    AuthError,
    InvalidCodeError,
    InvalidTokenError,
    InvalidUsernameError,
    SendingFailedError,
)
from auth.models import Channel, ChallengeIssued, ClientMeta, TokenPair, TotpPending, TwoFactorMethod
from auth.notify import TemplateKind
from auth.service import AuthService
from auth.tokens import generate_totp_secret, hash_refresh_token
from tests.support import PASSWORD, TEST_SECRET, FailingNotifier

CLIENT = ClientMeta(ip_address="10.0.0.1", user_agent="pytest")
CHALLENGES = "second_factor_challenges"


class TestEmailSecondFactor:
    def test_login_issues_challenge_and_sends_once(self, service, notifier, store, make_user):
        make_user("alice", method=TwoFactorMethod.EMAIL)
        result = service.login("alice", PASSWORD, CLIENT)

        assert isinstance(result, ChallengeIssued)
        assert result.channel is Channel.EMAIL
        assert len(notifier.sent) == 1
        user, code, kind = notifier.sent[0]
        assert user.username == "alice"
        assert kind is TemplateKind.TWO_FACTOR_LOGIN
        assert len(code) == 6 and code.isdigit()
        assert store.count_rows(CHALLENGES) == 1
        assert store.count_rows("refresh_tokens") == 0

    def test_matching_code_returns_tokens_once(self, service, notifier, store, make_user):
        make_user("alice", method=TwoFactorMethod.EMAIL)
        issued = service.login("alice", PASSWORD, CLIENT)

        tokens = service.complete_second_factor(TwoFactorMethod.EMAIL, notifier.last_code, issued.request_id, CLIENT)
        assert isinstance(tokens, TokenPair)
        assert store.count_rows(CHALLENGES) == 0

        with pytest.raises(InvalidCodeError):
            service.complete_second_factor(TwoFactorMethod.EMAIL, notifier.last_code, issued.request_id, CLIENT)

    def test_wrong_code_rejected_and_challenge_kept(self, service, notifier, store, make_user):
        make_user("alice", method=TwoFactorMethod.EMAIL)
        issued = service.login("alice", PASSWORD, CLIENT)
        wrong = "000000" if notifier.last_code != "000000" else "111111"

        with pytest.raises(InvalidCodeError):
            service.complete_second_factor(TwoFactorMethod.EMAIL, wrong, issued.request_id, CLIENT)
        assert store.count_rows(CHALLENGES) == 1

    def test_expiry_equal_to_now_is_expired(self, service, notifier, clock, settings, make_user):
        make_user("alice", method=TwoFactorMethod.EMAIL)
        issued = service.login("alice", PASSWORD, CLIENT)

        clock.advance(seconds=settings.two_factor_code_ttl_seconds)
        with pytest.raises(InvalidCodeError):
            service.complete_second_factor(TwoFactorMethod.EMAIL, notifier.last_code, issued.request_id, CLIENT)

    def test_one_second_before_expiry_is_accepted(self, service, notifier, clock, settings, make_user):
        make_user("alice", method=TwoFactorMethod.EMAIL)
        issued = service.login("alice", PASSWORD, CLIENT)

        clock.advance(seconds=settings.two_factor_code_ttl_seconds - 1)
        tokens = service.complete_second_factor(TwoFactorMethod.EMAIL, notifier.last_code, issued.request_id, CLIENT)
        assert isinstance(tokens, TokenPair)

    def test_inactive_identity_cannot_complete(self, service, notifier, store, make_user):
        alice = make_user("alice", method=TwoFactorMethod.EMAIL)
        issued = service.login("alice", PASSWORD, CLIENT)
        store.set_active(alice.id, False)

        with pytest.raises(AccountNotActiveError):
            service.complete_second_factor(TwoFactorMethod.EMAIL, notifier.last_code, issued.request_id, CLIENT)
        assert store.count_rows("refresh_tokens") == 0

    def test_delivery_failure_leaves_no_challenge(self, store, settings, clock, make_user):
        failing = FailingNotifier()
        service = AuthService(store, failing, settings, clock=clock)
        make_user("alice", method=TwoFactorMethod.EMAIL)

        with pytest.raises(SendingFailedError):
            service.login("alice", PASSWORD, CLIENT)
        assert failing.calls == 1
        assert store.count_rows(CHALLENGES) == 0

    def test_concurrent_completions_single_winner(self, service, notifier, make_user):
        make_user("alice", method=TwoFactorMethod.EMAIL)
        issued = service.login("alice", PASSWORD, CLIENT)
        code = notifier.last_code

        barrier = threading.Barrier(2)
        outcomes: list[object] = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                result = service.complete_second_factor(TwoFactorMethod.EMAIL, code, issued.request_id, CLIENT)
            except AuthError as exc:
                result = exc
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(outcomes) == 2
        assert sum(isinstance(o, TokenPair) for o in outcomes) == 1
        losers = [o for o in outcomes if not isinstance(o, TokenPair)]
        assert len(losers) == 1
        assert isinstance(losers[0], InvalidCodeError)


class TestTotpSecondFactor:
    def _totp_user(self, make_user):
        secret = generate_totp_secret()
        return make_user("tina", method=TwoFactorMethod.TOTP, totp_secret=secret), secret

    def test_login_returns_pending_token_without_tokens(self, service, store, settings, make_user):
        self._totp_user(make_user)
        result = service.login("tina", PASSWORD, CLIENT)

        assert isinstance(result, TotpPending)
        assert result.expires_in == settings.pending_token_expire_seconds
        assert store.count_rows("refresh_tokens") == 0

    def test_valid_code_completes(self, service, clock, make_user):
        tina, secret = self._totp_user(make_user)
        pending = service.login("tina", PASSWORD, CLIENT)

        code = pyotp.TOTP(secret).at(clock())
        tokens = service.complete_second_factor(TwoFactorMethod.TOTP, code, pending.pending_token, CLIENT)
        assert isinstance(tokens, TokenPair)
        assert tokens.roles == tina.roles

    def test_wrong_code_rejected(self, service, clock, make_user):
        _, secret = self._totp_user(make_user)
        pending = service.login("tina", PASSWORD, CLIENT)
        stale = pyotp.TOTP(secret).at(clock.now.timestamp() - 600)

        with pytest.raises(InvalidCodeError):
            service.complete_second_factor(TwoFactorMethod.TOTP, stale, pending.pending_token, CLIENT)

    def test_pending_token_is_not_an_access_token(self, service, make_user):
        self._totp_user(make_user)
        pending = service.login("tina", PASSWORD, CLIENT)
        with pytest.raises(InvalidTokenError):
            service.authenticate_access_token(pending.pending_token)

    def test_inactive_identity_cannot_complete(self, service, store, clock, make_user):
        tina, secret = self._totp_user(make_user)
        pending = service.login("tina", PASSWORD, CLIENT)
        store.set_active(tina.id, False)

        with pytest.raises(AccountNotActiveError):
            service.complete_second_factor(
                TwoFactorMethod.TOTP, pyotp.TOTP(secret).at(clock()), pending.pending_token, CLIENT
            )

    def test_second_factor_switched_after_login(self, service, clock, make_user):
        tina, secret = self._totp_user(make_user)
        pending = service.login("tina", PASSWORD, CLIENT)
        service.disable_second_factor(tina.id)

        with pytest.raises(InvalidTokenError):
            service.complete_second_factor(
                TwoFactorMethod.TOTP, pyotp.TOTP(secret).at(clock()), pending.pending_token, CLIENT
            )


class TestPasswordless:
    def test_start_by_email_and_complete(self, service, notifier, store, make_user):
        make_user("alice", email="alice@corp.example")
        issued = service.start_passwordless_login("alice@corp.example", Channel.EMAIL, CLIENT)

        assert notifier.sent[-1][2] is TemplateKind.EMAIL_LOGIN
        tokens = service.complete_passwordless_login(notifier.last_code, issued.request_id)
        assert isinstance(tokens, TokenPair)

        with pytest.raises(InvalidCodeError):
            service.complete_passwordless_login(notifier.last_code, issued.request_id)

    def test_tokens_bound_to_client_that_requested_the_code(self, service, notifier, store, clock, make_user):
        make_user("alice")
        issued = service.start_passwordless_login("alice", Channel.EMAIL, CLIENT)
        tokens = service.complete_passwordless_login(notifier.last_code, issued.request_id)

        record = store.get_refresh_token(hash_refresh_token(TEST_SECRET, tokens.refresh_token), clock())
        assert record.client == CLIENT

    def test_code_expires_after_one_minute(self, service, notifier, clock, make_user):
        make_user("alice")
        issued = service.start_passwordless_login("alice", Channel.EMAIL, CLIENT)
        clock.advance(seconds=60)

        with pytest.raises(InvalidCodeError):
            service.complete_passwordless_login(notifier.last_code, issued.request_id)

    def test_unknown_login(self, service, notifier):
        with pytest.raises(InvalidUsernameError):
            service.start_passwordless_login("ghost", Channel.EMAIL, CLIENT)
        assert notifier.sent == []

    def test_inactive_identity_gets_no_code(self, service, notifier, make_user):
        make_user("alice", is_active=False)
        with pytest.raises(AccountNotActiveError):
            service.start_passwordless_login("alice", Channel.EMAIL, CLIENT)
        assert notifier.sent == []

    def test_two_factor_code_cannot_complete_passwordless(self, service, notifier, make_user):
        make_user("alice", method=TwoFactorMethod.EMAIL)
        issued = service.login("alice", PASSWORD, CLIENT)

        with pytest.raises(InvalidCodeError):
            service.complete_passwordless_login(notifier.last_code, issued.request_id)

    def test_passwordless_code_cannot_complete_two_factor(self, service, notifier, make_user):
        make_user("alice")
        issued = service.start_passwordless_login("alice", Channel.EMAIL, CLIENT)

        with pytest.raises(InvalidCodeError):
            service.complete_second_factor(TwoFactorMethod.EMAIL, notifier.last_code, issued.request_id, CLIENT)

    def test_totp_identity_gets_pending_token_not_tokens(self, service, notifier, store, clock, make_user):
        secret = generate_totp_secret()
        make_user("carol", method=TwoFactorMethod.TOTP, totp_secret=secret)
        issued = service.start_passwordless_login("carol", Channel.EMAIL, CLIENT)

        result = service.complete_passwordless_login(notifier.last_code, issued.request_id)
        assert isinstance(result, TotpPending)
        assert store.count_rows("refresh_tokens") == 0
        assert store.count_rows(CHALLENGES) == 0

        tokens = service.complete_second_factor(
            TwoFactorMethod.TOTP, pyotp.TOTP(secret).at(clock()), result.pending_token, CLIENT
        )
        assert isinstance(tokens, TokenPair)

    def test_email_second_factor_sends_a_fresh_challenge(self, service, notifier, store, make_user):
        make_user("dave", method=TwoFactorMethod.EMAIL)
        issued = service.start_passwordless_login("dave", Channel.EMAIL, CLIENT)

        result = service.complete_passwordless_login(notifier.last_code, issued.request_id)
        assert isinstance(result, ChallengeIssued)
        assert result.request_id != issued.request_id
        assert notifier.sent[-1][2] is TemplateKind.TWO_FACTOR_LOGIN
        assert store.count_rows("refresh_tokens") == 0

        tokens = service.complete_second_factor(TwoFactorMethod.EMAIL, notifier.last_code, result.request_id, CLIENT)
        assert isinstance(tokens, TokenPair)
