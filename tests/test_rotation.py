"""
tests/test_rotation.py -- Refresh-token rotation.

Covers:
  - a refresh token rotates exactly once
  - expired and unknown tokens are rejected
  - inactive identities are rejected and keep their token untouched
  - a failure while issuing the replacement rolls back the consume
  - concurrent refreshes with one token: exactly one wins
  - the new pair is bound to the new client metadata
  - logout revokes only the caller's own token
"""

from __future__ import annotations

import threading
from unittest.mock import patch

import pytest

from auth.errors import AccountNotActiveError, AuthError, InvalidTokenError, TokenGenerationFailedError
from auth.models import ClientMeta, TokenPair
from auth.tokens import TokenSigner, hash_refresh_token
from tests.support import PASSWORD, TEST_SECRET

CLIENT = ClientMeta(ip_address="10.0.0.1", user_agent="pytest")
OTHER_CLIENT = ClientMeta(ip_address="10.0.0.2", user_agent="pytest/2")


@pytest.fixture
def alice_tokens(service, make_user) -> TokenPair:
    make_user("alice", roles=["user", "ops"])
    return service.login("alice", PASSWORD, CLIENT)


class TestRotate:
    def test_rotation_returns_fresh_pair_for_same_identity(self, service, alice_tokens):
        rotated = service.refresh(alice_tokens.refresh_token, OTHER_CLIENT)

        assert rotated.refresh_token != alice_tokens.refresh_token
        assert rotated.roles == ["user", "ops"]
        old_claims = TokenSigner(TEST_SECRET).decode_access_token(alice_tokens.access_token)
        new_claims = TokenSigner(TEST_SECRET).decode_access_token(rotated.access_token)
        assert new_claims["user_id"] == old_claims["user_id"]

    def test_same_token_succeeds_exactly_once(self, service, alice_tokens):
        service.refresh(alice_tokens.refresh_token, CLIENT)
        with pytest.raises(InvalidTokenError):
            service.refresh(alice_tokens.refresh_token, CLIENT)

    def test_rotated_token_chain_keeps_working(self, service, alice_tokens):
        second = service.refresh(alice_tokens.refresh_token, CLIENT)
        third = service.refresh(second.refresh_token, CLIENT)
        assert isinstance(third, TokenPair)

    def test_old_record_replaced_not_duplicated(self, service, store, alice_tokens):
        assert store.count_rows("refresh_tokens") == 1
        service.refresh(alice_tokens.refresh_token, CLIENT)
        assert store.count_rows("refresh_tokens") == 1

    def test_new_pair_bound_to_new_client(self, service, store, clock, alice_tokens):
        rotated = service.refresh(alice_tokens.refresh_token, OTHER_CLIENT)
        record = store.get_refresh_token(hash_refresh_token(TEST_SECRET, rotated.refresh_token), clock())
        assert record.client == OTHER_CLIENT

    def test_unknown_token(self, service):
        with pytest.raises(InvalidTokenError):
            service.refresh("0" * 64, CLIENT)

    def test_empty_token(self, service):
        with pytest.raises(InvalidTokenError):
            service.refresh("", CLIENT)

    def test_expired_token(self, service, clock, settings, alice_tokens):
        clock.advance(seconds=settings.refresh_token_expire_seconds)
        with pytest.raises(InvalidTokenError):
            service.refresh(alice_tokens.refresh_token, CLIENT)

    def test_inactive_identity_rejected_token_kept(self, service, store, alice_tokens):
        alice = store.get_by_username("alice")
        store.set_active(alice.id, False)

        with pytest.raises(AccountNotActiveError):
            service.refresh(alice_tokens.refresh_token, CLIENT)
        assert store.count_rows("refresh_tokens") == 1

        store.set_active(alice.id, True)
        assert isinstance(service.refresh(alice_tokens.refresh_token, CLIENT), TokenPair)

    def test_issue_failure_rolls_back_consume(self, service, store, alice_tokens):
        with patch("auth.issuer.generate_opaque_token", side_effect=TokenGenerationFailedError()):
            with pytest.raises(TokenGenerationFailedError):
                service.refresh(alice_tokens.refresh_token, CLIENT)

        assert store.count_rows("refresh_tokens") == 1
        assert isinstance(service.refresh(alice_tokens.refresh_token, CLIENT), TokenPair)

    def test_concurrent_refresh_single_winner(self, service, store, alice_tokens):
        barrier = threading.Barrier(4)
        outcomes: list[object] = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                result = service.refresh(alice_tokens.refresh_token, CLIENT)
            except AuthError as exc:
                result = exc
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(outcomes) == 4
        assert sum(isinstance(o, TokenPair) for o in outcomes) == 1
        losers = [o for o in outcomes if not isinstance(o, TokenPair)]
        assert all(isinstance(o, InvalidTokenError) for o in losers)
        assert store.count_rows("refresh_tokens") == 1


class TestLogout:
    def test_logout_revokes_own_token(self, service, store, alice_tokens):
        alice = store.get_by_username("alice")
        assert service.logout(alice.id, alice_tokens.refresh_token) is True
        with pytest.raises(InvalidTokenError):
            service.refresh(alice_tokens.refresh_token, CLIENT)

    def test_logout_cannot_revoke_someone_elses_token(self, service, store, make_user, alice_tokens):
        mallory = make_user("mallory")
        assert service.logout(mallory.id, alice_tokens.refresh_token) is False
        assert isinstance(service.refresh(alice_tokens.refresh_token, CLIENT), TokenPair)
