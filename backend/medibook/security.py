"""Password hashing and the failed-login lockout guard.

The lock is resolved lazily: an expired ``locked_until`` is only cleared the
next time the account is looked at, never by a background sweep.
"""
import logging
import math
import re
from datetime import datetime, timedelta
from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from passlib.context import CryptContext
from sqlalchemy import and_, case, or_, update
from sqlmodel import Session, select

from .config import settings
from .errors import AccountLocked, AccountSuspended, InvalidCredentials
from .models import User, utcnow

logger = logging.getLogger(__name__)

PASSWORD_POLICY = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[^A-Za-z0-9]).{12,}$")

ph = PasswordHasher()
# Accounts created before the argon2 switch still carry pbkdf2 hashes
legacy_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def meets_password_policy(password: str) -> bool:
    """Check if password meets complexity requirements"""
    return bool(PASSWORD_POLICY.match(password))


def get_password_hash(password: str) -> str:
    return ph.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return ph.verify(hashed_password, plain_password)
    except VerifyMismatchError:
        return False
    except (VerificationError, InvalidHash):
        try:
            return legacy_context.verify(plain_password, hashed_password)
        except ValueError:
            return False


def password_needs_rehash(hashed_password: str) -> bool:
    try:
        return ph.check_needs_rehash(hashed_password)
    except InvalidHash:
        return True


def get_user_by_email(session: Session, email: str) -> Optional[User]:
    statement = select(User).where(User.email == email.strip().lower())
    return session.exec(statement).first()


# --- Lockout guard ---

def is_locked(session: Session, user: User, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    if user.locked_until is None:
        return False
    if now < user.locked_until:
        return True

    # Lock has run out: unlock on observation
    user.locked_until = None
    user.failed_login_attempts = 0
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"🔓 Lock expired for {user.email}")
    return False


def remaining_lock_minutes(user: User, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    if user.locked_until is None or user.locked_until <= now:
        return 0
    return math.ceil((user.locked_until - now).total_seconds() / 60)


def record_failure(session: Session, user: User, now: Optional[datetime] = None) -> User:
    """
    Count one failed attempt and lock the account once the threshold is hit.

    Runs as a single UPDATE so that concurrent failures are all counted. An
    active lock is never extended.
    """
    now = now or utcnow()
    attempts = User.failed_login_attempts + 1
    lock_free = or_(User.locked_until.is_(None), User.locked_until <= now)
    statement = (
        update(User)
        .where(User.id == user.id)
        .values(
            failed_login_attempts=attempts,
            last_failed_login_at=now,
            locked_until=case(
                (
                    and_(attempts >= settings.LOCKOUT_THRESHOLD, lock_free),
                    now + timedelta(minutes=settings.LOCKOUT_MINUTES),
                ),
                else_=User.locked_until,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    session.execute(statement)
    session.commit()
    session.refresh(user)

    logger.warning(
        f"⚠️ Failed login attempt {user.failed_login_attempts}/{settings.LOCKOUT_THRESHOLD} for {user.email}"
    )
    return user


def record_success(session: Session, user: User) -> User:
    user.failed_login_attempts = 0
    user.locked_until = None
    user.last_failed_login_at = None
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def login(session: Session, email: str, password: str, now: Optional[datetime] = None) -> User:
    """
    Run one login attempt through the lockout guard.

    The attempt that trips the lock is reported as ``AccountLocked`` rather
    than ``InvalidCredentials``.
    """
    now = now or utcnow()
    user = get_user_by_email(session, email)
    if not user:
        raise InvalidCredentials()

    if is_locked(session, user, now):
        logger.warning(f"🔒 Locked account login attempt: {user.email}")
        raise AccountLocked(remaining_lock_minutes(user, now))

    if not user.is_active:
        logger.warning(f"Login attempt on suspended account: {user.email}")
        raise AccountSuspended()

    if not verify_password(password, user.password_hash):
        record_failure(session, user, now)
        if is_locked(session, user, now):
            logger.warning(f"🔒 Account locked for {user.email} after {user.failed_login_attempts} failed attempts")
            raise AccountLocked(
                remaining_lock_minutes(user, now),
                "Account locked due to too many failed login attempts. "
                f"Locked for {settings.LOCKOUT_MINUTES} minutes.",
            )
        raise InvalidCredentials()

    if password_needs_rehash(user.password_hash):
        user.password_hash = get_password_hash(password)

    record_success(session, user)
    logger.info(f"✅ Successful login for {user.email}")
    return user
