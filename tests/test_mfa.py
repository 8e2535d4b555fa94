"""Test suite for MFA challenges and TOTP enrolment."""
from datetime import timedelta
import threading

import pyotp
import pytest
from sqlalchemy import select

from account_security.auth.exceptions import (
    ChallengeDeliveryFailed,
    InvalidInput,
    InvalidOrExpiredChallenge,
)
from account_security.auth.mfa_service import (
    CRITICAL_ACTIONS,
    MFAChallengeEngine,
    REASON_DELIVERY_FAILED,
    REASON_SUPERSEDED,
    REASON_TOO_MANY_ATTEMPTS,
)
from account_security.config.security_config import ChallengePolicy
from account_security.core.clock import ensure_utc
from account_security.models.mfa import MFAChallenge, UserMFASecret
from account_security.models.user import User
from account_security.services.audit_logging_service import AuditEventType
from account_security.services.session_service import SuperuserSessionService
from tests.conftest import RecordingDelivery

WRONG_CODE = "000000"  # issued codes are always >= 100000


@pytest.fixture
def sessions(test_db, clock):
    return SuperuserSessionService(test_db, clock=clock)


@pytest.fixture
def engine(test_db, delivery, sessions, audit_trail, clock):
    return MFAChallengeEngine(
        test_db,
        delivery=delivery,
        session_notifier=sessions,
        audit_trail=audit_trail,
        policy=ChallengePolicy(),
        clock=clock,
    )


def _enrol_totp(engine, clock, test_user):
    """Enable TOTP and step past the time step the enrolment code spent."""
    secret, _ = engine.totp.setup_totp(test_user.id)
    engine.totp.enable_totp(test_user.id, pyotp.TOTP(secret).at(clock.now))
    clock.advance(seconds=30)
    return secret


def _totp_code_outside_window(secret, now):
    """A 6-digit code that the subject's authenticator is not showing."""
    totp = pyotp.TOTP(secret)
    valid = {totp.at(now + timedelta(seconds=offset)) for offset in (-30, 0, 30)}
    return next(code for code in ("000000", "111111", "222222", "333333") if code not in valid)


class TestChallengeIssue:
    """Test challenge issuance and delivery."""

    def test_issue_email_dispatches_six_digit_code(self, engine, delivery, test_user, clock):
        challenge = engine.issue(test_user.id, "EMAIL", action_context="delete_user")

        assert len(delivery.sent) == 1
        sent = delivery.sent[0]
        assert sent["channel"] == "EMAIL"
        assert sent["destination"] == test_user.email
        assert sent["action_context"] == "delete_user"
        assert len(sent["code"]) == 6 and sent["code"].isdigit()
        assert 100000 <= int(sent["code"]) <= 999999

        assert challenge.verified is False
        assert challenge.failed_attempts == 0
        assert challenge.code_hash != sent["code"]
        assert ensure_utc(challenge.expires_at) == clock.now + timedelta(minutes=10)

    def test_issue_sms_uses_phone(self, engine, delivery, test_user):
        engine.issue(test_user.id, "sms")
        assert delivery.sent[0]["destination"] == test_user.phone
        assert delivery.sent[0]["channel"] == "SMS"

    def test_sms_without_phone_is_invalid(self, engine, test_db, hasher):
        user = User(email="nophone@example.com", hashed_password=hasher.hash("Tr7#mK9$qLp2"))
        test_db.add(user)
        test_db.commit()

        with pytest.raises(InvalidInput):
            engine.issue(user.id, "SMS")

    def test_unknown_type_and_subject(self, engine, test_user):
        with pytest.raises(InvalidInput):
            engine.issue(test_user.id, "CARRIER_PIGEON")
        with pytest.raises(InvalidInput):
            engine.issue("no-such-subject", "EMAIL")

    def test_issue_is_audited(self, engine, audit_trail, test_user):
        challenge = engine.issue(test_user.id, "EMAIL")

        assert audit_trail.actions() == [AuditEventType.MFA_CHALLENGE_ISSUED.value]
        event = audit_trail.events[0]
        assert event.severity.value == "medium"
        assert event.metadata["challenge_id"] == challenge.id
        assert "code" not in event.metadata

    def test_new_challenge_supersedes_pending_one_in_same_context(self, engine, test_user):
        first = engine.issue(test_user.id, "EMAIL", action_context="backup_restore")
        other_context = engine.issue(test_user.id, "EMAIL", action_context="delete_user")
        second = engine.issue(test_user.id, "EMAIL", action_context="backup_restore")

        first = engine.get_challenge(first.id)
        assert first.invalidated is True
        assert first.invalidation_reason == REASON_SUPERSEDED
        assert engine.get_challenge(other_context.id).invalidated is False
        assert engine.get_challenge(second.id).invalidated is False

    def test_delivery_failure_invalidates_challenge(self, test_db, sessions, audit_trail, clock, test_user):
        failing = RecordingDelivery(result=False)
        engine = MFAChallengeEngine(test_db, delivery=failing, session_notifier=sessions, audit_trail=audit_trail, clock=clock)

        with pytest.raises(ChallengeDeliveryFailed):
            engine.issue(test_user.id, "EMAIL")

        code = failing.last_code
        challenge_id = audit_trail.events[-1].metadata["challenge_id"]
        challenge = engine.get_challenge(challenge_id)
        assert challenge.invalidated is True
        assert challenge.invalidation_reason == REASON_DELIVERY_FAILED
        assert AuditEventType.MFA_CHALLENGE_DELIVERY_FAILED.value in audit_trail.actions()
        assert AuditEventType.MFA_CHALLENGE_ISSUED.value not in audit_trail.actions()

        with pytest.raises(InvalidOrExpiredChallenge):
            engine.verify(challenge_id, code)

    def test_delivery_exception_is_a_delivery_failure(self, test_db, audit_trail, clock, test_user):
        raising = RecordingDelivery(error=TimeoutError("gateway timed out"))
        engine = MFAChallengeEngine(test_db, delivery=raising, audit_trail=audit_trail, clock=clock)

        with pytest.raises(ChallengeDeliveryFailed):
            engine.issue(test_user.id, "EMAIL")
        assert audit_trail.events[-1].metadata["error"] == "TimeoutError"


class TestChallengeVerify:
    """Test verification, expiry and invalidation."""

    def test_wrong_then_right_then_idempotent(self, engine, delivery, audit_trail, test_user):
        challenge = engine.issue(test_user.id, "EMAIL")
        code = delivery.last_code

        wrong = engine.verify(challenge.id, WRONG_CODE)
        assert wrong.success is False
        assert wrong.verified is False
        assert wrong.failed_attempts == 1
        assert engine.get_challenge(challenge.id).verified is False

        right = engine.verify(challenge.id, code)
        assert right.success is True
        assert right.verified is True

        again = engine.verify(challenge.id, code)
        assert again.success is True
        assert again.failed_attempts == 1
        assert audit_trail.actions().count(AuditEventType.MFA_CHALLENGE_VERIFIED.value) == 1

    def test_verified_challenge_rejects_wrong_code(self, engine, delivery, test_user):
        challenge = engine.issue(test_user.id, "EMAIL")
        engine.verify(challenge.id, delivery.last_code)

        with pytest.raises(InvalidOrExpiredChallenge):
            engine.verify(challenge.id, WRONG_CODE)
        assert engine.get_challenge(challenge.id).failed_attempts == 0

    def test_expired_challenge(self, engine, delivery, clock, test_user):
        challenge = engine.issue(test_user.id, "EMAIL")
        code = delivery.last_code

        clock.advance(minutes=10)

        with pytest.raises(InvalidOrExpiredChallenge):
            engine.verify(challenge.id, code)
        assert engine.get_challenge(challenge.id).verified is False

    def test_unknown_challenge(self, engine):
        with pytest.raises(InvalidOrExpiredChallenge):
            engine.verify("00000000-0000-0000-0000-000000000000", "123456")

    @pytest.mark.parametrize("code", ["", "   ", None])
    def test_blank_code_is_invalid_input(self, engine, test_user, code):
        challenge = engine.issue(test_user.id, "EMAIL")
        with pytest.raises(InvalidInput):
            engine.verify(challenge.id, code)

    def test_invalidate_is_terminal_and_idempotent(self, engine, delivery, audit_trail, test_user):
        challenge = engine.issue(test_user.id, "EMAIL")
        code = delivery.last_code

        assert engine.invalidate(challenge.id) is True
        assert engine.invalidate(challenge.id) is False
        assert audit_trail.actions().count(AuditEventType.MFA_CHALLENGE_INVALIDATED.value) == 1

        with pytest.raises(InvalidOrExpiredChallenge):
            engine.verify(challenge.id, code)

    def test_invalidate_verified_challenge_is_noop(self, engine, delivery, test_user):
        challenge = engine.issue(test_user.id, "EMAIL")
        engine.verify(challenge.id, delivery.last_code)

        assert engine.invalidate(challenge.id) is False
        assert engine.get_challenge(challenge.id).invalidated is False

    def test_wrong_codes_are_capped(self, engine, delivery, audit_trail, test_user):
        challenge = engine.issue(test_user.id, "EMAIL")
        code = delivery.last_code

        results = [engine.verify(challenge.id, WRONG_CODE) for _ in range(5)]
        assert [r.failed_attempts for r in results] == [1, 2, 3, 4, 5]

        stored = engine.get_challenge(challenge.id)
        assert stored.invalidated is True
        assert stored.invalidation_reason == REASON_TOO_MANY_ATTEMPTS
        assert AuditEventType.MFA_CHALLENGE_INVALIDATED.value in audit_trail.actions()

        with pytest.raises(InvalidOrExpiredChallenge):
            engine.verify(challenge.id, code)

    def test_cap_can_be_disabled(self, test_db, delivery, clock, test_user):
        engine = MFAChallengeEngine(
            test_db, delivery=delivery, policy=ChallengePolicy(max_failed_attempts=None), clock=clock
        )
        challenge = engine.issue(test_user.id, "EMAIL")
        code = delivery.last_code

        for _ in range(8):
            engine.verify(challenge.id, WRONG_CODE)

        result = engine.verify(challenge.id, code)
        assert result.success is True
        assert result.failed_attempts == 8

    def test_success_marks_session_verified(self, engine, delivery, sessions, test_db, test_user):
        session = sessions.create_session(test_user.id, ip_address="10.0.0.1")
        challenge = engine.issue(test_user.id, "EMAIL", session_id=session.id)

        engine.verify(challenge.id, delivery.last_code)

        test_db.refresh(session)
        assert session.mfa_verified is True
        assert session.mfa_verified_at is not None

    def test_wrong_code_does_not_touch_session(self, engine, sessions, test_db, test_user):
        session = sessions.create_session(test_user.id)
        challenge = engine.issue(test_user.id, "EMAIL", session_id=session.id)

        engine.verify(challenge.id, WRONG_CODE)

        test_db.refresh(session)
        assert session.mfa_verified is False

    def test_failures_are_audited_with_reason(self, engine, delivery, audit_trail, clock, test_user):
        challenge = engine.issue(test_user.id, "EMAIL")
        engine.verify(challenge.id, WRONG_CODE)
        clock.advance(minutes=11)
        with pytest.raises(InvalidOrExpiredChallenge):
            engine.verify(challenge.id, delivery.last_code)

        reasons = [
            e.metadata["reason"]
            for e in audit_trail.events
            if e.action == AuditEventType.MFA_CHALLENGE_VERIFICATION_FAILED
        ]
        assert reasons == ["wrong_code", "expired"]


class TestChallengeConcurrency:
    """Test that racing verifications resolve in commit order."""

    def _race(self, session_factory, audit_trail, clock, challenge_id, codes):
        barrier = threading.Barrier(len(codes))
        results = {}
        errors = {}

        def attempt(index, code):
            db = session_factory()
            try:
                engine = MFAChallengeEngine(db, audit_trail=audit_trail, policy=ChallengePolicy(), clock=clock)
                barrier.wait()
                results[index] = engine.verify(challenge_id, code)
            except Exception as e:
                errors[index] = e
            finally:
                db.close()

        threads = [threading.Thread(target=attempt, args=(i, code)) for i, code in enumerate(codes)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results, errors

    def _stored(self, session_factory, challenge_id):
        db = session_factory()
        try:
            challenge = db.get(MFAChallenge, challenge_id)
            return challenge.verified, challenge.failed_attempts
        finally:
            db.close()

    def test_concurrent_right_codes_all_succeed_once(self, engine, delivery, session_factory, audit_trail, clock, test_user):
        challenge = engine.issue(test_user.id, "EMAIL")
        code = delivery.last_code

        results, errors = self._race(session_factory, audit_trail, clock, challenge.id, [code] * 4)

        assert errors == {}
        assert all(r.success and r.verified for r in results.values())
        assert all(r.failed_attempts == 0 for r in results.values())
        assert audit_trail.actions().count(AuditEventType.MFA_CHALLENGE_VERIFIED.value) == 1
        assert self._stored(session_factory, challenge.id) == (True, 0)

    def test_right_and_wrong_code_race(self, engine, delivery, session_factory, audit_trail, clock, test_user):
        challenge = engine.issue(test_user.id, "EMAIL")

        results, errors = self._race(
            session_factory, audit_trail, clock, challenge.id, [delivery.last_code, WRONG_CODE]
        )

        # The right code always wins
        assert 1 not in errors
        assert results[0].success is True
        verified, failed_attempts = self._stored(session_factory, challenge.id)
        assert verified is True
        if 1 in results:
            # Wrong code committed first and counted
            assert results[1].success is False
            assert failed_attempts == 1
        else:
            # Right code committed first; the late wrong code hits a verified challenge
            assert isinstance(errors[1], InvalidOrExpiredChallenge)
            assert failed_attempts == 0
        assert audit_trail.actions().count(AuditEventType.MFA_CHALLENGE_VERIFIED.value) == 1


class TestTOTP:
    """Test TOTP enrolment and TOTP challenges."""

    def test_setup_returns_provisioning_uri(self, engine, test_user):
        secret, uri = engine.totp.setup_totp(test_user.id)

        assert len(secret) == 32
        assert uri.startswith("otpauth://totp/")
        assert f"secret={secret}" in uri

    def test_qr_code_is_png(self, engine, test_user):
        engine.totp.setup_totp(test_user.id)
        assert engine.totp.generate_qr_code(test_user.id).startswith(b"\x89PNG")

    def test_qr_code_requires_setup(self, engine, test_user):
        with pytest.raises(InvalidInput):
            engine.totp.generate_qr_code(test_user.id)

    def test_enable_requires_valid_code(self, engine, audit_trail, clock, test_user):
        secret, _ = engine.totp.setup_totp(test_user.id)

        assert engine.totp.enable_totp(test_user.id, _totp_code_outside_window(secret, clock.now)) is False
        assert engine.totp.enable_totp(test_user.id, pyotp.TOTP(secret).at(clock.now)) is True
        assert AuditEventType.MFA_TOTP_ENABLED.value in audit_trail.actions()

        with pytest.raises(InvalidInput):
            engine.totp.setup_totp(test_user.id)

    def test_totp_challenge_requires_enrolment(self, engine, test_user):
        with pytest.raises(InvalidInput):
            engine.issue(test_user.id, "TOTP")

    def test_totp_challenge(self, engine, delivery, clock, test_user):
        secret = _enrol_totp(engine, clock, test_user)

        challenge = engine.issue(test_user.id, "TOTP", action_context="security_policy_change")
        assert delivery.sent == []
        assert challenge.code_hash is None

        wrong = engine.verify(challenge.id, _totp_code_outside_window(secret, clock.now))
        assert wrong.success is False

        code = pyotp.TOTP(secret).at(clock.now)
        assert engine.verify(challenge.id, code).success is True
        assert engine.verify(challenge.id, code).success is True

    def test_totp_allows_one_step_of_drift(self, engine, clock, test_user):
        secret = _enrol_totp(engine, clock, test_user)
        clock.advance(seconds=30)
        challenge = engine.issue(test_user.id, "TOTP")

        previous_step = pyotp.TOTP(secret).at(clock.now - timedelta(seconds=30))
        assert engine.verify(challenge.id, previous_step).success is True

    def test_enrolment_code_cannot_answer_a_challenge(self, engine, clock, test_user):
        secret, _ = engine.totp.setup_totp(test_user.id)
        code = pyotp.TOTP(secret).at(clock.now)
        assert engine.totp.enable_totp(test_user.id, code) is True

        challenge = engine.issue(test_user.id, "TOTP")
        assert engine.verify(challenge.id, code).success is False

    def test_code_cannot_be_replayed_on_another_challenge(self, engine, clock, test_db, test_user):
        secret = _enrol_totp(engine, clock, test_user)
        totp = pyotp.TOTP(secret)
        code = totp.at(clock.now)

        first = engine.issue(test_user.id, "TOTP", action_context="delete_user")
        assert engine.verify(first.id, code).success is True

        second = engine.issue(test_user.id, "TOTP", action_context="backup_restore")
        replayed = engine.verify(second.id, code)
        assert replayed.success is False
        assert replayed.failed_attempts == 1

        clock.advance(seconds=30)
        assert engine.verify(second.id, totp.at(clock.now)).success is True

        mfa_secret = test_db.execute(
            select(UserMFASecret).where(UserMFASecret.user_id == test_user.id)
        ).scalar_one()
        assert mfa_secret.last_used_step == totp.timecode(clock.now)

    def test_earlier_step_is_refused_after_a_later_one(self, engine, clock, test_user):
        secret = _enrol_totp(engine, clock, test_user)
        clock.advance(seconds=30)
        totp = pyotp.TOTP(secret)

        first = engine.issue(test_user.id, "TOTP", action_context="delete_user")
        assert engine.verify(first.id, totp.at(clock.now)).success is True

        second = engine.issue(test_user.id, "TOTP", action_context="backup_restore")
        previous_step = totp.at(clock.now - timedelta(seconds=30))
        assert engine.verify(second.id, previous_step).success is False


class TestMFARequirement:
    """Test the fail-safe MFA requirement check."""

    @pytest.mark.parametrize("action", sorted(CRITICAL_ACTIONS))
    def test_critical_actions_always_require_mfa(self, engine, action):
        assert engine.is_required(action) is True
        assert engine.is_required(action, {"require_mfa": False}) is True

    def test_subject_flag(self, engine, test_user):
        assert engine.is_required("view_reports", {"require_mfa": True}) is True
        assert engine.is_required("view_reports", {"require_mfa": False}) is False
        assert engine.is_required("view_reports", test_user) is False
        test_user.require_mfa = True
        assert engine.is_required("view_reports", test_user) is True

    def test_callable_policy(self, engine):
        assert engine.is_required("view_reports", lambda: {"require_mfa": True}) is True
        assert engine.is_required("view_reports", lambda: False) is False

    def test_no_policy(self, engine):
        assert engine.is_required("view_reports") is False

    def test_lookup_failure_requires_mfa(self, engine, audit_trail):
        def broken_lookup():
            raise RuntimeError("policy store down")

        assert engine.is_required("view_reports", broken_lookup) is True
        assert audit_trail.actions() == [AuditEventType.MFA_REQUIREMENT_LOOKUP_FAILED.value]

    def test_malformed_policy_requires_mfa(self, engine):
        assert engine.is_required("view_reports", {}) is True
        assert engine.is_required("view_reports", object()) is True


class TestExpirySweep:
    """Test the expiry bookkeeping sweep."""

    def test_sweep_marks_only_lapsed_unresolved_challenges(self, engine, delivery, audit_trail, clock, test_user):
        verified = engine.issue(test_user.id, "EMAIL", action_context="delete_user")
        engine.verify(verified.id, delivery.last_code)
        pending = engine.issue(test_user.id, "EMAIL", action_context="backup_restore")

        assert engine.sweep_expired() == 0

        clock.advance(minutes=11)
        assert engine.sweep_expired() == 1
        assert engine.get_challenge(pending.id).expired is True
        assert engine.get_challenge(verified.id).expired is False
        assert audit_trail.actions().count(AuditEventType.MFA_CHALLENGE_EXPIRED.value) == 1

        assert engine.sweep_expired() == 0
