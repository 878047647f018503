"""Tests for the account lockout guard and password hashing."""
from datetime import datetime, timedelta

import pytest
from passlib.context import CryptContext

from medibook import security
from medibook.errors import AccountLocked, AccountSuspended, InvalidCredentials

from conftest import PASSWORD

NOW = datetime(2024, 6, 1, 12, 0)


def test_password_hash_roundtrip():
    """Argon2 hashes verify only against the original password."""
    hashed = security.get_password_hash(PASSWORD)
    assert hashed.startswith("$argon2")
    assert security.verify_password(PASSWORD, hashed)
    assert not security.verify_password("wrong-password", hashed)


def test_legacy_pbkdf2_hash_still_verifies():
    """Hashes from the old pbkdf2 scheme are accepted and flagged for rehash."""
    legacy = CryptContext(schemes=["pbkdf2_sha256"]).hash(PASSWORD)
    assert security.verify_password(PASSWORD, legacy)
    assert security.password_needs_rehash(legacy)


@pytest.mark.parametrize("password,ok", [
    ("Str0ng!Passw0rd", True),
    ("short1!A", False),
    ("alllowercase1!x", False),
    ("NoDigitsHere!!", False),
    ("NoSpecial12345", False),
])
def test_password_policy(password, ok):
    assert security.meets_password_policy(password) is ok


def test_not_locked_by_default(session, patient):
    assert security.is_locked(session, patient, NOW) is False
    assert security.remaining_lock_minutes(patient, NOW) == 0


def test_record_failure_increments_counter(session, patient):
    security.record_failure(session, patient, NOW)
    security.record_failure(session, patient, NOW)

    assert patient.failed_login_attempts == 2
    assert patient.last_failed_login_at == NOW
    assert patient.locked_until is None


def test_fifth_failure_locks_for_thirty_minutes(session, patient):
    for _ in range(5):
        security.record_failure(session, patient, NOW)

    assert patient.failed_login_attempts == 5
    assert patient.locked_until == NOW + timedelta(minutes=30)
    assert security.is_locked(session, patient, NOW)
    assert security.remaining_lock_minutes(patient, NOW) == 30


def test_failures_during_lock_do_not_extend_it(session, patient):
    for _ in range(5):
        security.record_failure(session, patient, NOW)
    security.record_failure(session, patient, NOW + timedelta(minutes=10))

    assert patient.failed_login_attempts == 6
    assert patient.locked_until == NOW + timedelta(minutes=30)


def test_remaining_minutes_round_up(session, patient):
    for _ in range(5):
        security.record_failure(session, patient, NOW)

    assert security.remaining_lock_minutes(patient, NOW + timedelta(minutes=29, seconds=1)) == 1
    assert security.remaining_lock_minutes(patient, NOW + timedelta(minutes=12, seconds=30)) == 18


def test_lock_expires_lazily(session, patient):
    """Observing an expired lock clears it and resets the counter."""
    for _ in range(5):
        security.record_failure(session, patient, NOW)

    later = NOW + timedelta(minutes=30)
    assert security.is_locked(session, patient, later) is False

    session.refresh(patient)
    assert patient.locked_until is None
    assert patient.failed_login_attempts == 0


def test_record_success_clears_everything(session, patient):
    for _ in range(3):
        security.record_failure(session, patient, NOW)

    security.record_success(session, patient)

    assert patient.failed_login_attempts == 0
    assert patient.locked_until is None
    assert patient.last_failed_login_at is None


def test_login_success_resets_failures(session, patient):
    for _ in range(4):
        security.record_failure(session, patient, NOW)

    user = security.login(session, patient.email, PASSWORD, NOW)

    assert user.id == patient.id
    assert user.failed_login_attempts == 0


def test_login_email_is_case_insensitive(session, patient):
    user = security.login(session, f"  {patient.email.upper()} ", PASSWORD, NOW)
    assert user.id == patient.id


def test_login_unknown_email(session):
    with pytest.raises(InvalidCredentials):
        security.login(session, "nobody@example.com", PASSWORD, NOW)


def test_login_wrong_password_counts_failure(session, patient):
    with pytest.raises(InvalidCredentials):
        security.login(session, patient.email, "Wr0ng!Password", NOW)

    session.refresh(patient)
    assert patient.failed_login_attempts == 1


def test_fifth_wrong_password_reports_lock(session, patient):
    """The attempt that trips the lock answers AccountLocked, not InvalidCredentials."""
    for _ in range(4):
        with pytest.raises(InvalidCredentials):
            security.login(session, patient.email, "Wr0ng!Password", NOW)

    with pytest.raises(AccountLocked) as exc_info:
        security.login(session, patient.email, "Wr0ng!Password", NOW)

    assert "30 minutes" in exc_info.value.message
    assert exc_info.value.remaining_minutes == 30


def test_locked_account_rejects_correct_password(session, patient):
    for _ in range(5):
        security.record_failure(session, patient, NOW)

    with pytest.raises(AccountLocked) as exc_info:
        security.login(session, patient.email, PASSWORD, NOW + timedelta(minutes=5))

    assert exc_info.value.remaining_minutes == 25
    session.refresh(patient)
    assert patient.failed_login_attempts == 5


def test_login_after_lock_expiry(session, patient):
    for _ in range(5):
        security.record_failure(session, patient, NOW)

    user = security.login(session, patient.email, PASSWORD, NOW + timedelta(minutes=31))
    assert user.failed_login_attempts == 0
    assert user.locked_until is None


def test_suspended_account_cannot_login(session, make_user):
    user = make_user("patient", is_active=False)

    with pytest.raises(AccountSuspended):
        security.login(session, user.email, PASSWORD, NOW)


def test_legacy_hash_is_upgraded_on_login(session, make_user):
    user = make_user("patient")
    user.password_hash = CryptContext(schemes=["pbkdf2_sha256"]).hash(PASSWORD)
    session.add(user)
    session.commit()

    security.login(session, user.email, PASSWORD, NOW)

    session.refresh(user)
    assert user.password_hash.startswith("$argon2")


def test_timestamps_persist_as_naive_utc(session, patient):
    for _ in range(5):
        security.record_failure(session, patient, NOW)

    session.expire_all()
    session.refresh(patient)
    assert patient.created_at.tzinfo is None
    assert patient.locked_until == NOW + timedelta(minutes=30)
    assert patient.locked_until.tzinfo is None
