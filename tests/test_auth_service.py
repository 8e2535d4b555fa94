"""Tests for registration, login and password change."""
import pytest
from passlib.context import CryptContext

from account_security.auth.exceptions import (
    AccountLocked,
    HistoryCheckUnavailable,
    InvalidCredentials,
    InvalidInput,
    PasswordReused,
    PasswordTooLong,
    PasswordTooShort,
    WeakPassword,
)
from account_security.auth.lockout import AccountLockoutTracker, SQLLockoutStore
from account_security.auth.password_history import PasswordHistoryStore
from account_security.auth.password_policy import WEAK_PATTERN_ERROR, PasswordStrengthValidator
from account_security.auth.service import AuthService, lockout_identifier
from account_security.config.security_config import HistoryPolicy, LockoutPolicy, PasswordPolicy
from account_security.models.user import User
from account_security.services.audit_logging_service import AuditEventType

PASSWORD = "Tr7#mK9$qLp2"
EMAIL = "owner@example.com"


@pytest.fixture
def tracker(test_db, audit_trail, clock):
    return AccountLockoutTracker(SQLLockoutStore(test_db), LockoutPolicy(), audit_trail=audit_trail, clock=clock)


@pytest.fixture
def history(test_db, hasher, audit_trail, clock):
    return PasswordHistoryStore(test_db, hasher, HistoryPolicy(), audit_trail=audit_trail, clock=clock)


@pytest.fixture
def auth_service(test_db, tracker, history, hasher, audit_trail, clock):
    return AuthService(
        test_db,
        tracker,
        history,
        validator=PasswordStrengthValidator(PasswordPolicy()),
        hasher=hasher,
        audit_trail=audit_trail,
        clock=clock,
    )


@pytest.fixture
def registered(auth_service):
    return auth_service.register_subject(EMAIL, PASSWORD)


class TestRegistration:
    """Test subject registration."""

    def test_register_hashes_and_seeds_history(self, auth_service, history, hasher, audit_trail):
        user = auth_service.register_subject("  New.User@Example.com ", PASSWORD, phone="+213555000001")

        assert user.email == "new.user@example.com"
        assert user.hashed_password != PASSWORD
        assert hasher.verify(PASSWORD, user.hashed_password) is True
        assert history.count(user.id) == 1
        assert audit_trail.actions() == [AuditEventType.PASSWORD_SET.value]

    def test_duplicate_email(self, auth_service, registered):
        with pytest.raises(InvalidInput):
            auth_service.register_subject(EMAIL.upper(), PASSWORD)

    def test_weak_password(self, auth_service):
        with pytest.raises(WeakPassword) as exc_info:
            auth_service.register_subject(EMAIL, "Password123!")
        assert WEAK_PATTERN_ERROR in exc_info.value.errors

    def test_short_password(self, auth_service):
        with pytest.raises(PasswordTooShort):
            auth_service.register_subject(EMAIL, "Tr7#mK9")

    def test_long_password(self, auth_service):
        with pytest.raises(PasswordTooLong):
            auth_service.register_subject(EMAIL, PASSWORD * 11)

    def test_rejected_registration_creates_nothing(self, auth_service, test_db):
        with pytest.raises(WeakPassword):
            auth_service.register_subject(EMAIL, "Password123!")
        assert test_db.query(User).count() == 0


class TestAuthentication:
    """Test password login with lockout."""

    def test_success(self, auth_service, registered):
        result = auth_service.authenticate(EMAIL, PASSWORD)

        assert result.user.id == registered.id
        assert result.mfa_required is False
        assert result.password_rehashed is False

    def test_subject_flag_requires_mfa(self, auth_service):
        auth_service.register_subject(EMAIL, PASSWORD, require_mfa=True)
        assert auth_service.authenticate(EMAIL, PASSWORD).mfa_required is True

    def test_wrong_password(self, auth_service, registered):
        with pytest.raises(InvalidCredentials):
            auth_service.authenticate(EMAIL, "Wrong#Pass99")

    def test_unknown_email_looks_like_wrong_password(self, auth_service, tracker):
        with pytest.raises(InvalidCredentials) as exc_info:
            auth_service.authenticate("ghost@example.com", PASSWORD)

        assert str(exc_info.value) == InvalidCredentials.public_message
        assert tracker.is_locked(lockout_identifier("ghost@example.com")).failed_attempts == 1

    def test_fifth_failure_locks(self, auth_service, registered):
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                auth_service.authenticate(EMAIL, "Wrong#Pass99")

        with pytest.raises(AccountLocked) as exc_info:
            auth_service.authenticate(EMAIL, "Wrong#Pass99")
        assert exc_info.value.locked_until is not None

    def test_locked_rejects_correct_password(self, auth_service, registered):
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                auth_service.authenticate(EMAIL, "Wrong#Pass99")
        with pytest.raises(AccountLocked):
            auth_service.authenticate(EMAIL, "Wrong#Pass99")

        with pytest.raises(AccountLocked):
            auth_service.authenticate(EMAIL, PASSWORD)

    def test_lock_lapses(self, auth_service, registered, clock):
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                auth_service.authenticate(EMAIL, "Wrong#Pass99")
        with pytest.raises(AccountLocked):
            auth_service.authenticate(EMAIL, "Wrong#Pass99")

        clock.advance(minutes=31)
        assert auth_service.authenticate(EMAIL, PASSWORD).user.id == registered.id

    def test_success_clears_failures(self, auth_service, registered, tracker):
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                auth_service.authenticate(EMAIL, "Wrong#Pass99")

        auth_service.authenticate(EMAIL, PASSWORD)

        assert tracker.is_locked(lockout_identifier(EMAIL)).failed_attempts == 0

    def test_inactive_subject(self, auth_service, registered, test_db):
        registered.is_active = False
        test_db.commit()

        with pytest.raises(InvalidCredentials):
            auth_service.authenticate(EMAIL, PASSWORD)

    def test_legacy_hash_is_upgraded(self, auth_service, test_db):
        user = User(email=EMAIL, hashed_password=CryptContext(schemes=["bcrypt"], bcrypt__rounds=4).hash(PASSWORD))
        test_db.add(user)
        test_db.commit()

        result = auth_service.authenticate(EMAIL, PASSWORD)

        assert result.password_rehashed is True
        test_db.refresh(user)
        assert user.hashed_password.startswith("$bcrypt-sha256$")


class TestPasswordChange:
    """Test the password change flow."""

    NEW_PASSWORD = "Vq4!nR8@wZx6"

    def test_change(self, auth_service, registered, history, hasher, audit_trail, test_db):
        result = auth_service.change_password(registered.id, PASSWORD, self.NEW_PASSWORD)

        assert result.valid is True
        test_db.refresh(registered)
        assert hasher.verify(self.NEW_PASSWORD, registered.hashed_password) is True
        assert history.count(registered.id) == 2
        assert audit_trail.actions()[-1] == AuditEventType.PASSWORD_CHANGED.value

    def test_reusing_a_recent_password(self, auth_service, registered, audit_trail):
        auth_service.change_password(registered.id, PASSWORD, self.NEW_PASSWORD)

        with pytest.raises(PasswordReused):
            auth_service.change_password(registered.id, self.NEW_PASSWORD, PASSWORD)
        assert audit_trail.events[-1].action == AuditEventType.PASSWORD_CHANGE_REJECTED
        assert audit_trail.events[-1].metadata["reason"] == "password_reused"

    def test_weak_new_password(self, auth_service, registered, audit_trail):
        with pytest.raises(WeakPassword):
            auth_service.change_password(registered.id, PASSWORD, "Password123!")
        assert audit_trail.events[-1].action == AuditEventType.PASSWORD_CHANGE_REJECTED

    def test_wrong_current_password_counts_toward_lockout(self, auth_service, registered, tracker):
        with pytest.raises(InvalidCredentials):
            auth_service.change_password(registered.id, "Wrong#Pass99", self.NEW_PASSWORD)

        assert tracker.is_locked(lockout_identifier(EMAIL)).failed_attempts == 1

    def test_history_outage_blocks_change(self, auth_service, registered, hasher, test_db, monkeypatch):
        def unavailable(*args, **kwargs):
            raise HistoryCheckUnavailable("Password history could not be checked")

        monkeypatch.setattr(auth_service.history, "is_reused", unavailable)

        with pytest.raises(HistoryCheckUnavailable):
            auth_service.change_password(registered.id, PASSWORD, self.NEW_PASSWORD)

        test_db.refresh(registered)
        assert hasher.verify(PASSWORD, registered.hashed_password) is True

    def test_unknown_subject(self, auth_service):
        with pytest.raises(InvalidCredentials):
            auth_service.change_password("no-such-subject", PASSWORD, self.NEW_PASSWORD)

    @pytest.mark.parametrize(
        "current_password, error",
        [("", InvalidInput), ("x" * 129, PasswordTooLong)],
        ids=["blank", "over_long"],
    )
    def test_malformed_current_password_is_audited(
        self, auth_service, registered, audit_trail, current_password, error
    ):
        audit_trail.events.clear()

        with pytest.raises(error):
            auth_service.change_password(registered.id, current_password, self.NEW_PASSWORD)

        assert audit_trail.actions() == [AuditEventType.PASSWORD_CHANGE_REJECTED.value]
        assert audit_trail.events[0].metadata["reason"] == error.code
