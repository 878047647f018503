import logging
import math
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_
from sqlmodel import SQLModel, Session, select

from .auth import require_role
from .database import get_session
from .errors import NotFound, ValidationFailed
from .models import Appointment, User, utcnow

router = APIRouter(dependencies=[Depends(require_role("admin"))])
logger = logging.getLogger(__name__)


class AdminUserRead(SQLModel):
    id: int
    name: str
    email: str
    phone: str
    role: str
    is_active: bool
    is_verified: bool
    failed_login_attempts: int
    locked_until: Optional[datetime]
    last_active: Optional[datetime]
    created_at: datetime


class AdminUserPage(SQLModel):
    users: List[AdminUserRead]
    total: int
    total_pages: int
    current_page: int


class AdminStats(SQLModel):
    total_users: int
    active_users: int
    suspended_users: int
    doctors: int
    patients: int
    appointments: int
    suspension_rate: float


def get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFound("User not found.")
    return user


def count_users(session: Session, *conditions) -> int:
    return session.exec(select(func.count(User.id)).where(*conditions)).one()


@router.get("/users", response_model=AdminUserPage)
def list_users(
    role: Optional[Literal["patient", "doctor", "admin"]] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(get_session),
):
    """
    All accounts, newest first, filtered by role, status or name/email.
    """
    conditions = []
    if role:
        conditions.append(User.role == role)
    if is_active is not None:
        conditions.append(User.is_active == is_active)
    if search:
        conditions.append(or_(User.name.ilike(f"%{search}%"), User.email.ilike(f"%{search}%")))

    statement = (
        select(User)
        .where(*conditions)
        .order_by(User.created_at.desc(), User.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    total = count_users(session, *conditions)
    return AdminUserPage(
        users=session.exec(statement).all(),
        total=total,
        total_pages=math.ceil(total / limit),
        current_page=page,
    )


@router.get("/users/{user_id}", response_model=AdminUserRead)
def get_user_detail(user_id: int, session: Session = Depends(get_session)):
    return get_user(session, user_id)


@router.put("/users/{user_id}/suspend", response_model=AdminUserRead)
def suspend_user(user_id: int, session: Session = Depends(get_session)):
    user = get_user(session, user_id)
    if user.role == "admin":
        raise ValidationFailed("Cannot suspend admin accounts.")
    if not user.is_active:
        raise ValidationFailed("User account is already suspended.")

    user.is_active = False
    user.updated_at = utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.warning(f"Suspended account {user.email}")
    return user


@router.put("/users/{user_id}/reactivate", response_model=AdminUserRead)
def reactivate_user(user_id: int, session: Session = Depends(get_session)):
    """
    Reactivate a suspended account. The login lock is cleared as well.
    """
    user = get_user(session, user_id)
    if user.is_active:
        raise ValidationFailed("User account is already active.")

    user.is_active = True
    user.failed_login_attempts = 0
    user.locked_until = None
    user.updated_at = utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"Reactivated account {user.email}")
    return user


@router.get("/stats", response_model=AdminStats)
def get_stats(session: Session = Depends(get_session)):
    total = count_users(session)
    suspended = count_users(session, User.is_active == False)  # noqa: E712
    return AdminStats(
        total_users=total,
        active_users=total - suspended,
        suspended_users=suspended,
        doctors=count_users(session, User.role == "doctor", User.is_active == True),  # noqa: E712
        patients=count_users(session, User.role == "patient", User.is_active == True),  # noqa: E712
        appointments=session.exec(select(func.count(Appointment.id))).one(),
        suspension_rate=round(suspended / total * 100, 2) if total else 0,
    )
