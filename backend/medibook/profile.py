import logging
from datetime import date
from typing import Dict, Literal, Optional

from fastapi import APIRouter, Body, Depends
from sqlmodel import SQLModel, Field, Session

from . import booking, security
from .auth import PHONE_PATTERN, get_current_user
from .database import get_session
from .errors import Forbidden, NotFound, ValidationFailed
from .models import Appointment, User, utcnow

router = APIRouter()
logger = logging.getLogger(__name__)


class Address(SQLModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class ProfileRead(SQLModel):
    id: int
    name: str
    email: str
    phone: str
    role: str
    date_of_birth: Optional[date]
    gender: Optional[str]
    address: Optional[Address]


class ProfileUpdate(SQLModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Literal["male", "female", "other"]] = None
    address: Optional[Address] = None


class ReviewSummary(SQLModel):
    total_reviews: int
    average_rating: float


class UserStats(SQLModel):
    appointments: Dict[str, int]
    reviews: Optional[ReviewSummary] = None


@router.get("/me", response_model=ProfileRead)
def get_my_profile(current_user: User = Depends(get_current_user)):
    """
    Get the current user's personal profile.
    """
    return current_user


@router.put("/me", response_model=ProfileRead)
def update_my_profile(
    profile_in: ProfileUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """
    Update the fields sent; omitted fields stay as they are.
    """
    changes = profile_in.model_dump(exclude_unset=True)
    # name and phone are required on the account
    for field in ("name", "phone"):
        if changes.get(field, "") is None:
            del changes[field]
    if "phone" in changes and not PHONE_PATTERN.match(changes["phone"]):
        raise ValidationFailed("Please provide a valid phone number.")

    for field, value in changes.items():
        setattr(current_user, field, value)
    current_user.updated_at = utcnow()

    session.add(current_user)
    session.commit()
    session.refresh(current_user)
    return current_user


@router.delete("/me")
def delete_my_account(
    password: str = Body(..., embed=True),
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """
    Close the current account after confirming the password. The account is
    deactivated, not removed, so its appointments and reviews stay intact.
    """
    if not security.verify_password(password, current_user.password_hash):
        raise ValidationFailed("Incorrect password.")

    current_user.is_active = False
    current_user.updated_at = utcnow()
    session.add(current_user)
    session.commit()
    logger.info(f"Account {current_user.email} closed by its owner")
    return {"message": "Account deleted successfully"}


@router.get("/{user_id}/stats", response_model=UserStats)
def get_user_stats(
    user_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    if current_user.id != user_id and current_user.role != "admin":
        raise Forbidden("Not authorized to view these statistics.")

    user = session.get(User, user_id)
    if user is None:
        raise NotFound("User not found.")

    if user.role == "doctor":
        return UserStats(
            appointments=booking.status_counts(session, Appointment.doctor_id, user.id),
            reviews=ReviewSummary(total_reviews=user.total_reviews, average_rating=user.rating),
        )
    if user.role == "patient":
        return UserStats(appointments=booking.status_counts(session, Appointment.patient_id, user.id))
    return UserStats(appointments={})
