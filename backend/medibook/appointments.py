import logging
import math
import re
from datetime import date
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import field_validator
from sqlalchemy import func
from sqlmodel import SQLModel, Field, Session, select

from . import booking
from .auth import get_current_user, require_role
from .database import get_session
from .errors import Forbidden
from .models import Appointment, User
from .notification_service import notification_service

router = APIRouter()
logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")

AppointmentStatus = Literal["pending", "confirmed", "cancelled", "completed", "rejected"]


def normalize_time(value: str) -> str:
    match = TIME_PATTERN.match(value)
    if not match:
        raise ValueError("Time must be HH:MM (24-hour)")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


# ---------- SCHEMAS ----------

class AppointmentBook(SQLModel):
    doctor_id: int
    appointment_date: date
    appointment_time: str
    appointment_type: Literal["online", "offline"]
    consultation_type: Literal["general", "follow-up", "emergency", "routine"] = "general"
    symptoms: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("appointment_time")
    @classmethod
    def check_time(cls, value: str) -> str:
        return normalize_time(value)


class AppointmentStatusUpdate(SQLModel):
    status: Literal["confirmed", "cancelled", "completed", "rejected"]
    doctor_notes: Optional[str] = Field(default=None, max_length=1000)
    prescription: Optional[str] = Field(default=None, max_length=1000)
    follow_up_date: Optional[date] = None


class AppointmentCancel(SQLModel):
    cancellation_reason: Optional[str] = Field(default=None, max_length=500)


class AppointmentReschedule(SQLModel):
    new_date: date
    new_time: str
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("new_time")
    @classmethod
    def check_time(cls, value: str) -> str:
        return normalize_time(value)


class Pagination(SQLModel):
    current_page: int
    total_pages: int
    total: int
    limit: int


class AppointmentPage(SQLModel):
    data: List[Appointment]
    pagination: Pagination


def paginate(session: Session, statement, count_statement, page: int, limit: int) -> AppointmentPage:
    total = session.exec(count_statement).one()
    rows = session.exec(statement.offset((page - 1) * limit).limit(limit)).all()
    return AppointmentPage(
        data=rows,
        pagination=Pagination(
            current_page=page,
            total_pages=math.ceil(total / limit),
            total=total,
            limit=limit,
        ),
    )


def list_appointments_for(
    session: Session,
    owner_column,
    owner_id: int,
    status_filter: Optional[str],
    on_date: Optional[date],
    page: int,
    limit: int,
) -> AppointmentPage:
    conditions = [owner_column == owner_id]
    if status_filter:
        conditions.append(Appointment.status == status_filter)
    if on_date:
        conditions.append(Appointment.appointment_date == on_date)

    statement = (
        select(Appointment)
        .where(*conditions)
        .order_by(Appointment.appointment_date, Appointment.appointment_time)
    )
    count_statement = select(func.count(Appointment.id)).where(*conditions)
    return paginate(session, statement, count_statement, page, limit)


# ---------- APPOINTMENT ENDPOINTS ----------

@router.post("", response_model=Appointment, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    body: AppointmentBook,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("patient")),
):
    """
    Book an appointment for the current patient with a doctor.
    The doctor's current fee is captured on the appointment.
    """
    appt = booking.book(
        session,
        patient_id=current_user.id,
        doctor_id=body.doctor_id,
        appointment_date=body.appointment_date,
        appointment_time=body.appointment_time,
        appointment_type=body.appointment_type,
        consultation_type=body.consultation_type,
        symptoms=body.symptoms,
        notes=body.notes,
    )

    try:
        doctor = session.get(User, appt.doctor_id)
        await notification_service.send_booking_confirmation(current_user, doctor, appt)
    except Exception as e:
        # Log error but don't fail the booking
        logger.warning(f"⚠️ Failed to send booking notification: {e}")

    return appt


@router.get("/patient", response_model=AppointmentPage)
def list_my_appointments(
    status_filter: Optional[AppointmentStatus] = Query(None, alias="status"),
    on_date: Optional[date] = Query(None, alias="date"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("patient")),
):
    """
    List the current patient's appointments, earliest first.
    """
    return list_appointments_for(
        session, Appointment.patient_id, current_user.id, status_filter, on_date, page, limit
    )


@router.get("/calendar/{doctor_id}", response_model=List[Appointment])
def get_calendar(
    doctor_id: int,
    start_date: date,
    end_date: date,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("doctor")),
):
    """
    Doctor calendar: every appointment between two dates, inclusive.
    """
    if current_user.id != doctor_id:
        raise Forbidden()

    statement = (
        select(Appointment)
        .where(
            Appointment.doctor_id == doctor_id,
            Appointment.appointment_date >= start_date,
            Appointment.appointment_date <= end_date,
        )
        .order_by(Appointment.appointment_date, Appointment.appointment_time)
    )
    return session.exec(statement).all()


@router.get("/{appointment_id}", response_model=Appointment)
def get_appointment(
    appointment_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    appt = booking.get_appointment(session, appointment_id)
    if current_user.role != "admin" and current_user.id not in (appt.patient_id, appt.doctor_id):
        raise Forbidden("Not authorized to access this appointment.")
    return appt


@router.put("/{appointment_id}/status", response_model=Appointment)
async def update_appointment_status(
    appointment_id: int,
    body: AppointmentStatusUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("doctor")),
):
    """
    Doctor moves an appointment through its lifecycle.
    """
    appt = booking.update_status(
        session,
        appointment_id,
        current_user.id,
        body.status,
        doctor_notes=body.doctor_notes,
        prescription=body.prescription,
        follow_up_date=body.follow_up_date,
    )

    try:
        patient = session.get(User, appt.patient_id)
        await notification_service.send_status_update(patient, current_user, appt)
    except Exception as e:
        logger.warning(f"⚠️ Failed to send status update: {e}")

    return appt


@router.put("/{appointment_id}/cancel", response_model=Appointment)
async def cancel_appointment(
    appointment_id: int,
    body: Optional[AppointmentCancel] = None,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("patient")),
):
    """
    Cancel an upcoming appointment (soft cancel by setting status).
    """
    appt = booking.cancel(
        session, appointment_id, current_user.id, body.cancellation_reason if body else None
    )

    try:
        doctor = session.get(User, appt.doctor_id)
        await notification_service.send_cancellation_email(current_user, doctor, appt)
    except Exception as e:
        logger.warning(f"⚠️ Failed to send cancellation email: {e}")

    return appt


@router.put("/{appointment_id}/reschedule", response_model=Appointment)
async def reschedule_appointment(
    appointment_id: int,
    body: AppointmentReschedule,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """
    Move an appointment to a new slot. The patient, the doctor or an admin
    may do this; the response is the new appointment.
    """
    new_appt = booking.reschedule(
        session, appointment_id, current_user, body.new_date, body.new_time, body.reason
    )

    try:
        old_appt = session.get(Appointment, appointment_id)
        patient = session.get(User, new_appt.patient_id)
        doctor = session.get(User, new_appt.doctor_id)
        await notification_service.send_reschedule_email(patient, doctor, old_appt, new_appt)
    except Exception as e:
        logger.warning(f"⚠️ Failed to send reschedule email: {e}")

    return new_appt
