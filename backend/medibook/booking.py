"""
Appointment lifecycle: booking, status transitions, cancellation and
rescheduling.

A slot is a (doctor, date, time) triple. Only one pending or confirmed
appointment may hold a slot; the partial unique index on ``Appointment``
backs the pre-insert check so that the loser of a booking race gets
``SlotUnavailable`` instead of a duplicate.
"""
import logging
from collections import Counter
from datetime import date, datetime, time, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .config import settings
from .errors import (
    AppointmentInPast,
    ConsultationTypeUnsupported,
    DoctorNotFound,
    Forbidden,
    InvalidTransition,
    NotFound,
    SlotUnavailable,
)
from .models import Appointment, User, utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "confirmed")
TERMINAL_STATUSES = ("cancelled", "completed", "rejected")

ALLOWED_TRANSITIONS = {
    "pending": {"confirmed", "cancelled", "rejected"},
    "confirmed": {"cancelled", "completed"},
    "cancelled": set(),
    "completed": set(),
    "rejected": set(),
}


def can_transition(current: str, new_status: str) -> bool:
    return new_status in ALLOWED_TRANSITIONS.get(current, set())


def clinic_timezone():
    if settings.CLINIC_TIMEZONE.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(settings.CLINIC_TIMEZONE)


def slot_instant(appointment_date: date, appointment_time: str) -> datetime:
    """Combine a calendar day and an HH:MM wall-clock time into a naive UTC instant."""
    hours, minutes = (int(part) for part in appointment_time.split(":"))
    local = datetime.combine(appointment_date, time(hours, minutes), tzinfo=clinic_timezone())
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def is_slot_available(session: Session, doctor_id: int, appointment_date: date, appointment_time: str) -> bool:
    statement = select(Appointment.id).where(
        Appointment.doctor_id == doctor_id,
        Appointment.appointment_date == appointment_date,
        Appointment.appointment_time == appointment_time,
        Appointment.status.in_(ACTIVE_STATUSES),
    )
    return session.exec(statement).first() is None


def booked_times(session: Session, doctor_id: int, appointment_date: date) -> List[str]:
    statement = (
        select(Appointment.appointment_time)
        .where(
            Appointment.doctor_id == doctor_id,
            Appointment.appointment_date == appointment_date,
            Appointment.status.in_(ACTIVE_STATUSES),
        )
        .order_by(Appointment.appointment_time)
    )
    return list(session.exec(statement).all())


def status_counts(session: Session, column, user_id: int) -> Dict[str, int]:
    """Appointment counts per status for one patient or doctor, e.g. ``Appointment.doctor_id``."""
    rows = session.exec(
        select(Appointment.status, func.count(Appointment.id))
        .where(column == user_id)
        .group_by(Appointment.status)
    ).all()
    return {appt_status: count for appt_status, count in rows}


def monthly_counts(session: Session, doctor_id: int, months: int = 6, now: Optional[datetime] = None) -> List[dict]:
    """Appointments created per calendar month, oldest first, over the last ``months`` months."""
    now = now or utcnow()
    year, month = now.year, now.month - (months - 1)
    while month < 1:
        year, month = year - 1, month + 12
    since = datetime(year, month, 1)

    created = session.exec(
        select(Appointment.created_at).where(
            Appointment.doctor_id == doctor_id,
            Appointment.created_at >= since,
        )
    ).all()
    counts = Counter((stamp.year, stamp.month) for stamp in created)
    return [
        {"year": y, "month": m, "count": count}
        for (y, m), count in sorted(counts.items())
    ]


def _commit_slot(session: Session, *objects) -> None:
    """Commit pending changes, mapping an active-slot index violation to SlotUnavailable."""
    for obj in objects:
        session.add(obj)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise SlotUnavailable()


def book(
    session: Session,
    patient_id: int,
    doctor_id: int,
    appointment_date: date,
    appointment_time: str,
    appointment_type: str,
    consultation_type: str = "general",
    symptoms: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    now = now or utcnow()

    doctor = session.get(User, doctor_id)
    if doctor is None or doctor.role != "doctor" or not doctor.is_active:
        raise DoctorNotFound()

    if appointment_type == "online" and not doctor.online_consultation:
        raise ConsultationTypeUnsupported("Doctor does not offer online consultations.")
    if appointment_type == "offline" and not doctor.offline_consultation:
        raise ConsultationTypeUnsupported("Doctor does not offer offline consultations.")

    if not is_slot_available(session, doctor_id, appointment_date, appointment_time):
        raise SlotUnavailable()

    scheduled_at = slot_instant(appointment_date, appointment_time)
    if scheduled_at <= now:
        raise AppointmentInPast("Cannot book appointments in the past.")

    appt = Appointment(
        patient_id=patient_id,
        doctor_id=doctor_id,
        appointment_date=appointment_date,
        appointment_time=appointment_time,
        scheduled_at=scheduled_at,
        appointment_type=appointment_type,
        consultation_type=consultation_type,
        symptoms=symptoms,
        notes=notes,
        consultation_fee=doctor.consultation_fee or 0,
        status="pending",
    )
    _commit_slot(session, appt)
    session.refresh(appt)
    logger.info(f"Appointment {appt.id} booked with doctor {doctor_id} on {appointment_date} {appointment_time}")
    return appt


def get_appointment(session: Session, appointment_id: int) -> Appointment:
    appt = session.get(Appointment, appointment_id)
    if appt is None:
        raise NotFound("Appointment not found.")
    return appt


def update_status(
    session: Session,
    appointment_id: int,
    acting_doctor_id: int,
    new_status: str,
    doctor_notes: Optional[str] = None,
    prescription: Optional[str] = None,
    follow_up_date: Optional[date] = None,
) -> Appointment:
    appt = get_appointment(session, appointment_id)

    if appt.doctor_id != acting_doctor_id:
        raise Forbidden("Not authorized to update this appointment.")

    if not can_transition(appt.status, new_status):
        raise InvalidTransition(f"Cannot change appointment status from {appt.status} to {new_status}.")

    appt.status = new_status
    if doctor_notes is not None:
        appt.doctor_notes = doctor_notes
    if prescription is not None:
        appt.prescription = prescription
    if follow_up_date is not None:
        appt.follow_up_date = follow_up_date
    if new_status == "cancelled":
        appt.cancelled_by = "doctor"
    appt.updated_at = utcnow()

    session.add(appt)
    session.commit()
    session.refresh(appt)
    logger.info(f"Appointment {appt.id} moved to {new_status} by doctor {acting_doctor_id}")
    return appt


def cancel(
    session: Session,
    appointment_id: int,
    acting_patient_id: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    now = now or utcnow()
    appt = get_appointment(session, appointment_id)

    if appt.patient_id != acting_patient_id:
        raise Forbidden("Not authorized to cancel this appointment.")

    if appt.status not in ACTIVE_STATUSES:
        raise InvalidTransition("Appointment cannot be cancelled.")

    if appt.scheduled_at <= now:
        raise AppointmentInPast("Cannot cancel past appointments.")

    appt.status = "cancelled"
    appt.cancellation_reason = reason
    appt.cancelled_by = "patient"
    appt.updated_at = utcnow()

    session.add(appt)
    session.commit()
    session.refresh(appt)
    logger.info(f"Appointment {appt.id} cancelled by patient {acting_patient_id}")
    return appt


def reschedule(
    session: Session,
    appointment_id: int,
    actor: User,
    new_date: date,
    new_time: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    """
    Move an appointment to a new slot.

    The original is cancelled and a new pending appointment linked to it via
    ``rescheduled_from`` is created, both in one transaction. Returns the new
    appointment.
    """
    now = now or utcnow()
    original = get_appointment(session, appointment_id)

    if actor.role != "admin" and actor.id not in (original.patient_id, original.doctor_id):
        raise Forbidden("Not authorized to reschedule this appointment.")

    if original.status not in ACTIVE_STATUSES:
        raise InvalidTransition(f"Cannot reschedule a {original.status} appointment.")

    if not is_slot_available(session, original.doctor_id, new_date, new_time):
        raise SlotUnavailable()

    scheduled_at = slot_instant(new_date, new_time)
    if scheduled_at <= now:
        raise AppointmentInPast("Cannot reschedule to past date/time.")

    original.status = "cancelled"
    original.cancellation_reason = reason or "Appointment rescheduled"
    original.cancelled_by = actor.role
    original.updated_at = utcnow()
    session.add(original)
    # Free the old slot before the new row is inserted
    session.flush()

    replacement = Appointment(
        patient_id=original.patient_id,
        doctor_id=original.doctor_id,
        appointment_date=new_date,
        appointment_time=new_time,
        scheduled_at=scheduled_at,
        appointment_type=original.appointment_type,
        consultation_type=original.consultation_type,
        symptoms=original.symptoms,
        notes=original.notes,
        consultation_fee=original.consultation_fee,
        status="pending",
        is_rescheduled=True,
        rescheduled_from=original.id,
    )
    _commit_slot(session, replacement)
    session.refresh(replacement)
    logger.info(f"Appointment {original.id} rescheduled as {replacement.id} by {actor.role} {actor.id}")
    return replacement
