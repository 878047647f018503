import logging
import math
from datetime import date, timedelta
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import field_validator
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel, Field, Session, select

from . import booking
from .appointments import AppointmentPage, AppointmentStatus, list_appointments_for, normalize_time
from .auth import PHONE_PATTERN, require_role
from .database import get_session
from .errors import Conflict, DoctorNotFound, Forbidden, ValidationFailed
from .models import Appointment, Review, User, utcnow

router = APIRouter()
logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# ---------- SCHEMAS ----------

class TimeSlot(SQLModel):
    start_time: str
    end_time: str
    is_available: bool = True

    @field_validator("start_time", "end_time")
    @classmethod
    def check_time(cls, value: str) -> str:
        return normalize_time(value)


class DayAvailability(SQLModel):
    day: Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
    slots: List[TimeSlot] = []


class DoctorSummary(SQLModel):
    id: int
    name: str
    specialization: Optional[str]
    experience: Optional[int]
    hospital: Optional[str]
    city: Optional[str]
    consultation_fee: Optional[float]
    rating: float
    total_reviews: int
    online_consultation: bool
    offline_consultation: bool


class DoctorRead(DoctorSummary):
    email: str
    phone: str
    education: Optional[str]
    availability: List[DayAvailability]


class DoctorUpdate(SQLModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    phone: Optional[str] = None
    specialization: Optional[str] = None
    experience: Optional[int] = Field(default=None, ge=0)
    education: Optional[str] = None
    hospital: Optional[str] = None
    city: Optional[str] = None
    consultation_fee: Optional[float] = Field(default=None, ge=0)
    online_consultation: Optional[bool] = None
    offline_consultation: Optional[bool] = None


class AvailabilityUpdate(SQLModel):
    availability: List[DayAvailability]


class DatedAvailability(SQLModel):
    date: date
    day: str
    slots: List[TimeSlot]
    booked_times: List[str] = []


class ReviewCreate(SQLModel):
    appointment_id: int
    rating: int = Field(ge=1, le=5)
    title: Optional[str] = Field(default=None, max_length=100)
    comment: Optional[str] = Field(default=None, max_length=500)
    is_anonymous: bool = False


class ReviewRead(SQLModel):
    id: int
    rating: int
    title: Optional[str]
    comment: Optional[str]
    patient_name: Optional[str]
    created_at: date


class DoctorDetail(SQLModel):
    doctor: DoctorRead
    reviews: List[ReviewRead]
    upcoming_availability: List[DatedAvailability]


class DoctorPage(SQLModel):
    data: List[DoctorSummary]
    total: int
    total_pages: int
    current_page: int


class MonthlyCount(SQLModel):
    year: int
    month: int
    count: int


class DoctorStats(SQLModel):
    appointment_stats: Dict[str, int]
    monthly_stats: List[MonthlyCount]


# ---------- HELPERS ----------

def get_doctor(session: Session, doctor_id: int) -> User:
    doctor = session.get(User, doctor_id)
    if doctor is None or doctor.role != "doctor" or not doctor.is_active:
        raise DoctorNotFound()
    return doctor


def require_owner(current_user: User, doctor_id: int):
    if current_user.id != doctor_id:
        raise Forbidden("Doctors can only manage their own profile.")


def weekday_name(day: date) -> str:
    return WEEKDAYS[day.weekday()]


def availability_on(session: Session, doctor: User, day: date) -> Optional[DatedAvailability]:
    name = weekday_name(day)
    for entry in doctor.availability or []:
        if entry.get("day") == name:
            return DatedAvailability(
                date=day,
                day=name,
                slots=entry.get("slots", []),
                booked_times=booking.booked_times(session, doctor.id, day),
            )
    return None


def update_doctor_rating(session: Session, doctor_id: int):
    """Recompute a doctor's average rating and review count from visible reviews."""
    avg_rating, total = session.exec(
        select(func.avg(Review.rating), func.count(Review.id)).where(
            Review.doctor_id == doctor_id,
            Review.is_hidden == False,  # noqa: E712
        )
    ).one()

    doctor = session.get(User, doctor_id)
    doctor.rating = round(avg_rating, 1) if avg_rating is not None else 0
    doctor.total_reviews = total
    session.add(doctor)
    session.commit()


# ---------- ROUTES ----------

@router.get("", response_model=DoctorPage)
def search_doctors(
    search: Optional[str] = None,
    specialization: Optional[str] = None,
    city: Optional[str] = None,
    hospital: Optional[str] = None,
    min_fee: Optional[float] = Query(None, ge=0),
    max_fee: Optional[float] = Query(None, ge=0),
    online: Optional[bool] = None,
    offline: Optional[bool] = None,
    rating: Optional[float] = Query(None, ge=0, le=5),
    sort: Literal["name", "rating", "experience", "consultation_fee", "created_at"] = "rating",
    order: Literal["asc", "desc"] = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    session: Session = Depends(get_session),
):
    """
    Search active doctors by free text and filters.
    """
    conditions = [User.role == "doctor", User.is_active == True]  # noqa: E712
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(
            User.name.ilike(pattern),
            User.specialization.ilike(pattern),
            User.hospital.ilike(pattern),
            User.city.ilike(pattern),
        ))
    if specialization:
        conditions.append(User.specialization.ilike(f"%{specialization}%"))
    if city:
        conditions.append(User.city.ilike(f"%{city}%"))
    if hospital:
        conditions.append(User.hospital.ilike(f"%{hospital}%"))
    if min_fee is not None:
        conditions.append(User.consultation_fee >= min_fee)
    if max_fee is not None:
        conditions.append(User.consultation_fee <= max_fee)
    if online is not None:
        conditions.append(User.online_consultation == online)
    if offline is not None:
        conditions.append(User.offline_consultation == offline)
    if rating is not None:
        conditions.append(User.rating >= rating)

    sort_column = getattr(User, sort)
    statement = (
        select(User)
        .where(*conditions)
        .order_by(sort_column.asc() if order == "asc" else sort_column.desc(), User.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    total = session.exec(select(func.count(User.id)).where(*conditions)).one()

    return DoctorPage(
        data=session.exec(statement).all(),
        total=total,
        total_pages=math.ceil(total / limit),
        current_page=page,
    )


@router.get("/{doctor_id}", response_model=DoctorDetail)
def get_doctor_profile(doctor_id: int, session: Session = Depends(get_session)):
    """
    Public doctor profile with latest reviews and the coming week's schedule.
    """
    doctor = get_doctor(session, doctor_id)

    rows = session.exec(
        select(Review, User.name)
        .join(User, User.id == Review.patient_id)
        .where(Review.doctor_id == doctor_id, Review.is_hidden == False)  # noqa: E712
        .order_by(Review.created_at.desc())
        .limit(10)
    ).all()
    reviews = [
        ReviewRead(
            id=review.id,
            rating=review.rating,
            title=review.title,
            comment=review.comment,
            patient_name=None if review.is_anonymous else patient_name,
            created_at=review.created_at.date(),
        )
        for review, patient_name in rows
    ]

    today = utcnow().date()
    upcoming = []
    for offset in range(7):
        entry = availability_on(session, doctor, today + timedelta(days=offset))
        if entry:
            upcoming.append(entry)

    return DoctorDetail(doctor=DoctorRead.model_validate(doctor), reviews=reviews, upcoming_availability=upcoming)


@router.put("/{doctor_id}", response_model=DoctorRead)
def update_doctor_profile(
    doctor_id: int,
    body: DoctorUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("doctor")),
):
    require_owner(current_user, doctor_id)

    changes = {field: value for field, value in body.model_dump(exclude_unset=True).items() if value is not None}
    if "phone" in changes and not PHONE_PATTERN.match(changes["phone"]):
        raise ValidationFailed("Please provide a valid phone number.")

    for field, value in changes.items():
        setattr(current_user, field, value)
    current_user.updated_at = utcnow()
    session.add(current_user)
    session.commit()
    session.refresh(current_user)
    return current_user


@router.get("/{doctor_id}/availability")
def get_availability(
    doctor_id: int,
    on_date: Optional[date] = Query(None, alias="date"),
    session: Session = Depends(get_session),
):
    """
    Weekly availability, or a single day's slots and booked times when
    ``date`` is given.
    """
    doctor = get_doctor(session, doctor_id)
    if on_date is not None:
        availability = availability_on(session, doctor, on_date)
        slots = [availability] if availability else []
    else:
        slots = doctor.availability or []

    return {
        "availability": slots,
        "online_consultation": doctor.online_consultation,
        "offline_consultation": doctor.offline_consultation,
    }


@router.put("/{doctor_id}/availability", response_model=List[DayAvailability])
def update_availability(
    doctor_id: int,
    body: AvailabilityUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("doctor")),
):
    require_owner(current_user, doctor_id)

    for day in body.availability:
        for slot in day.slots:
            if slot.start_time >= slot.end_time:
                raise ValidationFailed(f"Slot {slot.start_time}-{slot.end_time} on {day.day} ends before it starts.")

    # Reassign rather than mutate so the JSON column is flagged dirty
    current_user.availability = [day.model_dump() for day in body.availability]
    current_user.updated_at = utcnow()
    session.add(current_user)
    session.commit()
    session.refresh(current_user)
    return current_user.availability


@router.get("/{doctor_id}/appointments", response_model=AppointmentPage)
def list_doctor_appointments(
    doctor_id: int,
    status_filter: Optional[AppointmentStatus] = Query(None, alias="status"),
    on_date: Optional[date] = Query(None, alias="date"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("doctor")),
):
    require_owner(current_user, doctor_id)
    return list_appointments_for(
        session, Appointment.doctor_id, doctor_id, status_filter, on_date, page, limit
    )


@router.post("/{doctor_id}/reviews", response_model=ReviewRead, status_code=status.HTTP_201_CREATED)
def create_review(
    doctor_id: int,
    body: ReviewCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("patient")),
):
    """
    Review a doctor after a completed appointment. One review per
    appointment and per doctor.
    """
    get_doctor(session, doctor_id)

    appt = booking.get_appointment(session, body.appointment_id)
    if appt.patient_id != current_user.id or appt.doctor_id != doctor_id:
        raise Forbidden("You can only review your own appointments with this doctor.")
    if appt.status != "completed":
        raise ValidationFailed("Only completed appointments can be reviewed.")

    review = Review(
        patient_id=current_user.id,
        doctor_id=doctor_id,
        appointment_id=appt.id,
        rating=body.rating,
        title=body.title,
        comment=body.comment,
        is_anonymous=body.is_anonymous,
    )
    session.add(review)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise Conflict("You have already reviewed this doctor.")
    session.refresh(review)

    update_doctor_rating(session, doctor_id)
    logger.info(f"Review {review.id} added for doctor {doctor_id}")

    return ReviewRead(
        id=review.id,
        rating=review.rating,
        title=review.title,
        comment=review.comment,
        patient_name=None if review.is_anonymous else current_user.name,
        created_at=review.created_at.date(),
    )


@router.get("/{doctor_id}/stats", response_model=DoctorStats)
def get_doctor_stats(
    doctor_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("doctor")),
):
    """
    Appointment counts by status, and per month over the last six months.
    """
    require_owner(current_user, doctor_id)
    return DoctorStats(
        appointment_stats=booking.status_counts(session, Appointment.doctor_id, doctor_id),
        monthly_stats=booking.monthly_counts(session, doctor_id),
    )
