"""Unit tests for auth/authenticator.py -- credential verification.

Covers:
- correct password -> Verified with the stored identity
- unknown username and wrong password -> the same INVALID_CREDENTIALS reason
- unknown username still runs bcrypt (timing equalization)
- locked account -> ACCOUNT_DISABLED, but only when the password is right
- repeated failures lock the account
- failures against a disabled account leave the disable in place
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from auth.authenticator import CredentialAuthenticator, Failed, FailureReason, Verified
from auth.store import IdentityStore


class TestAuthenticate:
    def test_valid_credentials(self, store: IdentityStore, make_user) -> None:
        alice = make_user("alice", "s3cret-pass")
        result = CredentialAuthenticator(store).authenticate("alice", "s3cret-pass")
        assert isinstance(result, Verified)
        assert result.identity == alice

    def test_username_is_case_insensitive(self, store: IdentityStore, make_user) -> None:
        make_user("alice", "s3cret-pass")
        result = CredentialAuthenticator(store).authenticate("ALICE", "s3cret-pass")
        assert isinstance(result, Verified)

    def test_unknown_user_and_wrong_password_look_the_same(self, store: IdentityStore, make_user) -> None:
        make_user("alice", "s3cret-pass")
        auth = CredentialAuthenticator(store)
        ghost = auth.authenticate("ghost", "whatever")
        wrong = auth.authenticate("alice", "wrong")
        assert ghost == wrong == Failed(FailureReason.INVALID_CREDENTIALS)

    def test_unknown_user_runs_bcrypt(self, store: IdentityStore) -> None:
        with patch("auth.authenticator.verify_password", return_value=False) as verify:
            CredentialAuthenticator(store).authenticate("ghost", "whatever")
        assert verify.call_count == 1, "Dummy hash comparison must run for unknown users"

    def test_empty_username(self, store: IdentityStore) -> None:
        result = CredentialAuthenticator(store).authenticate("", "whatever")
        assert result == Failed(FailureReason.INVALID_CREDENTIALS)


class TestLockout:
    def test_disabled_account_with_right_password(self, store: IdentityStore, make_user) -> None:
        alice = make_user("alice", "s3cret-pass")
        store.disable(alice.user_id)
        result = CredentialAuthenticator(store).authenticate("alice", "s3cret-pass")
        assert result == Failed(FailureReason.ACCOUNT_DISABLED)

    def test_disabled_account_with_wrong_password(self, store: IdentityStore, make_user) -> None:
        """A wrong password never reveals that the account is disabled."""
        alice = make_user("alice", "s3cret-pass")
        store.disable(alice.user_id)
        result = CredentialAuthenticator(store).authenticate("alice", "wrong")
        assert result == Failed(FailureReason.INVALID_CREDENTIALS)

    def test_enable_restores_access(self, store: IdentityStore, make_user) -> None:
        alice = make_user("alice", "s3cret-pass")
        store.disable(alice.user_id)
        store.enable(alice.user_id)
        assert isinstance(CredentialAuthenticator(store).authenticate("alice", "s3cret-pass"), Verified)

    def test_repeated_failures_lock_the_account(self, store: IdentityStore, make_user) -> None:
        store.max_failed_attempts = 3
        make_user("bob", "s3cret-pass")
        auth = CredentialAuthenticator(store)
        for _ in range(3):
            assert auth.authenticate("bob", "wrong") == Failed(FailureReason.INVALID_CREDENTIALS)
        assert auth.authenticate("bob", "s3cret-pass") == Failed(FailureReason.ACCOUNT_DISABLED)

    def test_success_resets_failure_count(self, store: IdentityStore, make_user) -> None:
        store.max_failed_attempts = 3
        make_user("bob", "s3cret-pass")
        auth = CredentialAuthenticator(store)
        auth.authenticate("bob", "wrong")
        auth.authenticate("bob", "wrong")
        assert isinstance(auth.authenticate("bob", "s3cret-pass"), Verified)
        auth.authenticate("bob", "wrong")
        assert isinstance(auth.authenticate("bob", "s3cret-pass"), Verified)

    def test_failures_do_not_shorten_a_disable(self, store: IdentityStore, make_user) -> None:
        store.max_failed_attempts = 3
        alice = make_user("alice", "s3cret-pass")
        store.disable(alice.user_id)
        auth = CredentialAuthenticator(store)
        for _ in range(5):
            assert auth.authenticate("alice", "wrong") == Failed(FailureReason.INVALID_CREDENTIALS)

        later = datetime.now(timezone.utc) + timedelta(seconds=store.lockout_seconds + 60)
        with patch("auth.store._now", return_value=later):
            assert store.is_locked_out(alice)
            assert auth.authenticate("alice", "s3cret-pass") == Failed(FailureReason.ACCOUNT_DISABLED)
