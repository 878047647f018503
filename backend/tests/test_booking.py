"""Tests for the appointment lifecycle: booking, transitions, cancellation, rescheduling."""
from datetime import date, datetime

import pytest
from sqlmodel import select

from medibook import booking
from medibook.errors import (
    AppointmentInPast,
    ConsultationTypeUnsupported,
    DoctorNotFound,
    Forbidden,
    InvalidTransition,
    NotFound,
    SlotUnavailable,
)
from medibook.models import Appointment

NOW = datetime(2024, 5, 1, 9, 0)
DAY = date(2024, 6, 1)


@pytest.fixture
def book(session, patient, doctor):
    def _book(appointment_time="10:00", appointment_date=DAY, **kwargs):
        params = {
            "patient_id": patient.id,
            "doctor_id": doctor.id,
            "appointment_date": appointment_date,
            "appointment_time": appointment_time,
            "appointment_type": "offline",
            "now": NOW,
        }
        params.update(kwargs)
        return booking.book(session, **params)
    return _book


def active_for(session, doctor_id):
    statement = select(Appointment).where(
        Appointment.doctor_id == doctor_id,
        Appointment.status.in_(booking.ACTIVE_STATUSES),
    )
    return session.exec(statement).all()


def test_slot_instant_in_utc():
    assert booking.slot_instant(DAY, "10:30") == datetime(2024, 6, 1, 10, 30)


def test_slot_instant_uses_clinic_timezone(monkeypatch):
    monkeypatch.setattr(booking.settings, "CLINIC_TIMEZONE", "America/Chicago")
    # CDT is UTC-5 in June
    assert booking.slot_instant(DAY, "10:30") == datetime(2024, 6, 1, 15, 30)


@pytest.mark.parametrize("current,new_status,allowed", [
    ("pending", "confirmed", True),
    ("pending", "rejected", True),
    ("pending", "cancelled", True),
    ("pending", "completed", False),
    ("confirmed", "completed", True),
    ("confirmed", "cancelled", True),
    ("confirmed", "rejected", False),
    ("completed", "cancelled", False),
    ("cancelled", "confirmed", False),
    ("rejected", "pending", False),
])
def test_transition_table(current, new_status, allowed):
    assert booking.can_transition(current, new_status) is allowed


def test_book_creates_pending_appointment(book, doctor):
    appt = book()

    assert appt.status == "pending"
    assert appt.consultation_fee == doctor.consultation_fee
    assert appt.scheduled_at == datetime(2024, 6, 1, 10, 0)


def test_fee_is_frozen_at_booking(session, book, doctor):
    appt = book()
    doctor.consultation_fee = 200.0
    session.add(doctor)
    session.commit()

    session.refresh(appt)
    assert appt.consultation_fee == 80.0


def test_second_booking_of_active_slot_fails(book, session, doctor):
    book()

    with pytest.raises(SlotUnavailable):
        book()

    assert len(active_for(session, doctor.id)) == 1


def test_cancelled_slot_can_be_booked_again(book, session, patient):
    first = book()
    booking.cancel(session, first.id, patient.id, now=NOW)

    second = book()
    assert second.status == "pending"


def test_booked_times_lists_active_slots(book, session, patient, doctor):
    book("09:00")
    book("11:30")
    cancelled = book("10:00")
    booking.cancel(session, cancelled.id, patient.id, now=NOW)

    assert booking.booked_times(session, doctor.id, DAY) == ["09:00", "11:30"]
    assert booking.is_slot_available(session, doctor.id, DAY, "10:00")
    assert not booking.is_slot_available(session, doctor.id, DAY, "09:00")


def test_book_in_the_past_fails(book):
    with pytest.raises(AppointmentInPast):
        book(now=datetime(2024, 6, 1, 10, 0))


def test_book_with_unknown_doctor(book):
    with pytest.raises(DoctorNotFound):
        book(doctor_id=9999)


def test_book_with_non_doctor(book, make_user):
    other_patient = make_user("patient")
    with pytest.raises(DoctorNotFound):
        book(doctor_id=other_patient.id)


def test_book_with_suspended_doctor(book, make_user):
    inactive = make_user("doctor", is_active=False)
    with pytest.raises(DoctorNotFound):
        book(doctor_id=inactive.id)


def test_book_unsupported_consultation_type(book, make_user):
    offline_only = make_user("doctor", online_consultation=False)
    with pytest.raises(ConsultationTypeUnsupported):
        book(doctor_id=offline_only.id, appointment_type="online")


def test_update_status_walks_the_lifecycle(book, session, doctor):
    appt = book()

    appt = booking.update_status(session, appt.id, doctor.id, "confirmed")
    assert appt.status == "confirmed"

    appt = booking.update_status(
        session, appt.id, doctor.id, "completed", doctor_notes="Rest", prescription="Water"
    )
    assert appt.status == "completed"
    assert appt.doctor_notes == "Rest"
    assert appt.prescription == "Water"


def test_invalid_transition_leaves_status_unchanged(book, session, doctor):
    appt = book()
    booking.update_status(session, appt.id, doctor.id, "confirmed")
    booking.update_status(session, appt.id, doctor.id, "completed")

    with pytest.raises(InvalidTransition):
        booking.update_status(session, appt.id, doctor.id, "cancelled")

    session.refresh(appt)
    assert appt.status == "completed"


def test_pending_cannot_complete(book, session, doctor):
    appt = book()
    with pytest.raises(InvalidTransition):
        booking.update_status(session, appt.id, doctor.id, "completed")

    session.refresh(appt)
    assert appt.status == "pending"


def test_doctor_cancellation_is_recorded(book, session, doctor):
    appt = book()
    appt = booking.update_status(session, appt.id, doctor.id, "cancelled")
    assert appt.cancelled_by == "doctor"


def test_other_doctor_cannot_update(book, session, make_user):
    appt = book()
    other = make_user("doctor")

    with pytest.raises(Forbidden):
        booking.update_status(session, appt.id, other.id, "confirmed")


def test_update_missing_appointment(session, doctor):
    with pytest.raises(NotFound):
        booking.update_status(session, 12345, doctor.id, "confirmed")


def test_patient_cancels(book, session, patient):
    appt = book()

    appt = booking.cancel(session, appt.id, patient.id, "Feeling better", now=NOW)

    assert appt.status == "cancelled"
    assert appt.cancelled_by == "patient"
    assert appt.cancellation_reason == "Feeling better"


def test_cancel_past_appointment_fails(book, session, patient):
    appt = book()

    with pytest.raises(AppointmentInPast):
        booking.cancel(session, appt.id, patient.id, now=datetime(2024, 6, 2))

    session.refresh(appt)
    assert appt.status == "pending"


def test_cancel_someone_elses_appointment(book, session, make_user):
    appt = book()
    stranger = make_user("patient")

    with pytest.raises(Forbidden):
        booking.cancel(session, appt.id, stranger.id, now=NOW)


def test_cancel_completed_appointment(book, session, patient, doctor):
    appt = book()
    booking.update_status(session, appt.id, doctor.id, "confirmed")
    booking.update_status(session, appt.id, doctor.id, "completed")

    with pytest.raises(InvalidTransition):
        booking.cancel(session, appt.id, patient.id, now=NOW)


def test_reschedule_moves_to_new_slot(book, session, patient, doctor):
    original = book()

    replacement = booking.reschedule(session, original.id, patient, DAY, "14:00", now=NOW)

    session.refresh(original)
    assert original.status == "cancelled"
    assert original.cancelled_by == "patient"
    assert original.cancellation_reason == "Appointment rescheduled"
    assert replacement.status == "pending"
    assert replacement.is_rescheduled
    assert replacement.rescheduled_from == original.id
    assert replacement.appointment_time == "14:00"
    assert replacement.consultation_fee == original.consultation_fee

    active = active_for(session, doctor.id)
    assert [appt.id for appt in active] == [replacement.id]


def test_reschedule_by_doctor_and_admin(book, session, doctor, admin):
    original = book()

    moved = booking.reschedule(session, original.id, doctor, DAY, "15:00", now=NOW)
    session.refresh(original)
    assert original.cancelled_by == "doctor"

    booking.reschedule(session, moved.id, admin, DAY, "16:00", "Clinic closed", now=NOW)
    session.refresh(moved)
    assert moved.cancelled_by == "admin"
    assert moved.cancellation_reason == "Clinic closed"


def test_reschedule_to_taken_slot_changes_nothing(book, session, patient, doctor):
    original = book("10:00")
    book("14:00")

    with pytest.raises(SlotUnavailable):
        booking.reschedule(session, original.id, patient, DAY, "14:00", now=NOW)

    session.refresh(original)
    assert original.status == "pending"
    assert len(active_for(session, doctor.id)) == 2


def test_reschedule_into_the_past(book, session, patient):
    original = book()

    with pytest.raises(AppointmentInPast):
        booking.reschedule(session, original.id, patient, date(2024, 4, 1), "10:00", now=NOW)

    session.refresh(original)
    assert original.status == "pending"


def test_reschedule_terminal_appointment(book, session, patient, doctor):
    original = book()
    booking.update_status(session, original.id, doctor.id, "rejected")

    with pytest.raises(InvalidTransition):
        booking.reschedule(session, original.id, patient, DAY, "14:00", now=NOW)


def test_reschedule_by_stranger(book, session, make_user):
    original = book()
    stranger = make_user("patient")

    with pytest.raises(Forbidden):
        booking.reschedule(session, original.id, stranger, DAY, "14:00", now=NOW)


def test_concurrent_booking_loser_gets_slot_unavailable(book, session, doctor, monkeypatch):
    book()
    # Both requests passed the availability check before either committed
    monkeypatch.setattr(booking, "is_slot_available", lambda *args: True)

    with pytest.raises(SlotUnavailable):
        book()

    rows = session.exec(select(Appointment).where(Appointment.doctor_id == doctor.id)).all()
    assert len(rows) == 1


def test_concurrent_reschedule_rolls_back_cancellation(book, session, patient, doctor, monkeypatch):
    original = book("10:00")
    book("14:00")
    monkeypatch.setattr(booking, "is_slot_available", lambda *args: True)

    with pytest.raises(SlotUnavailable):
        booking.reschedule(session, original.id, patient, DAY, "14:00", now=NOW)

    session.refresh(original)
    assert original.status == "pending"
    assert original.cancellation_reason is None
    assert len(active_for(session, doctor.id)) == 2


def test_status_counts(book, session, patient, doctor):
    book("09:00")
    book("10:00")
    rejected = book("11:00")
    booking.update_status(session, rejected.id, doctor.id, "rejected")

    assert booking.status_counts(session, Appointment.doctor_id, doctor.id) == {"pending": 2, "rejected": 1}
    assert booking.status_counts(session, Appointment.patient_id, patient.id) == {"pending": 2, "rejected": 1}
    assert booking.status_counts(session, Appointment.patient_id, doctor.id) == {}


def test_monthly_counts_cover_last_six_months(book, session, doctor):
    created = [datetime(2023, 11, 30), datetime(2024, 1, 15), datetime(2024, 5, 2), datetime(2024, 5, 20)]
    for index, stamp in enumerate(created):
        appt = book(f"{9 + index}:00")
        appt.created_at = stamp
        session.add(appt)
    session.commit()

    counts = booking.monthly_counts(session, doctor.id, now=datetime(2024, 5, 25))

    assert counts == [
        {"year": 2024, "month": 1, "count": 1},
        {"year": 2024, "month": 5, "count": 2},
    ]
