"""
Notification Service for MediBook
Handles SMS and Email notifications for accounts and appointments,
and schedules appointment reminders.
"""

import asyncio
import logging
from datetime import timedelta
from enum import Enum
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from sqlmodel import Session
from twilio.rest import Client

from .config import settings
from .models import Appointment, User, utcnow

logger = logging.getLogger(__name__)


class NotificationType(Enum):
    BOOKING_CONFIRMATION = "booking_confirmation"
    STATUS_UPDATE = "status_update"
    APPOINTMENT_REMINDER = "appointment_reminder"
    CANCELLATION = "cancellation"
    RESCHEDULING = "rescheduling"


def format_slot(appointment: Appointment) -> str:
    return f"{appointment.appointment_date.strftime('%B %d, %Y')} at {appointment.appointment_time}"


def _wrap(title: str, name: str, body: str) -> str:
    return f"""
        <html>
            <body style="font-family: Arial, sans-serif;">
                <h2>{title}</h2>
                <p>Dear {name},</p>
                {body}
                <br>
                <p>Best regards,<br>MediBook Team</p>
            </body>
        </html>
        """


async def send_appointment_reminder(appointment_id: int):
    """Reminder job body. Re-reads the appointment so stale jobs do nothing."""
    from .database import engine

    with Session(engine) as session:
        appt = session.get(Appointment, appointment_id)
        if appt is None or appt.status not in ("pending", "confirmed") or appt.reminder_sent:
            logger.info(f"Skipping reminder for appointment {appointment_id}")
            return
        patient = session.get(User, appt.patient_id)
        doctor = session.get(User, appt.doctor_id)
        await notification_service.send_reminder(patient, doctor, appt)
        appt.reminder_sent = True
        session.add(appt)
        session.commit()


class NotificationService:

    def __init__(self):
        self.twilio_client = None
        self.sendgrid_client = None

        if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN:
            self.twilio_client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        else:
            logger.warning("Twilio credentials not found. SMS notifications disabled.")

        if settings.SENDGRID_API_KEY:
            self.sendgrid_client = SendGridAPIClient(settings.SENDGRID_API_KEY)
        else:
            logger.warning("SendGrid API key not found. Email notifications disabled.")

        if settings.JOBSTORE_URL:
            jobstores = {'default': SQLAlchemyJobStore(url=settings.JOBSTORE_URL)}
        else:
            jobstores = {'default': MemoryJobStore()}
        self.scheduler = AsyncIOScheduler(jobstores=jobstores)

    def start(self):
        """Start the reminder scheduler. Must run inside the event loop."""
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    async def send_sms(self, to_phone: str, message: str) -> bool:
        if settings.TWILIO_TEST_MODE.lower() == "true":
            logger.info(f"[TEST MODE SMS] To: {to_phone} | Message: {message}")
            return True

        if not self.twilio_client:
            logger.error("Twilio client not initialized")
            return False

        try:
            message_response = await asyncio.to_thread(
                self.twilio_client.messages.create,
                body=message,
                from_=settings.TWILIO_PHONE_NUMBER,
                to=to_phone
            )
            logger.info(f"SMS sent successfully. SID: {message_response.sid}")
            return True
        except Exception as e:
            logger.error(f"Failed to send SMS: {str(e)}")
            return False

    async def send_email(self, to_email: str, subject: str, html_content: str) -> bool:
        if settings.MAILTRAP_MODE.lower() == "true":
            logger.info(f"[TEST MODE EMAIL] To: {to_email} | Subject: {subject}")
            return True

        if not self.sendgrid_client:
            logger.error("SendGrid client not initialized")
            return False

        try:
            message = Mail(
                from_email=settings.SENDGRID_FROM_EMAIL,
                to_emails=to_email,
                subject=subject,
                html_content=html_content
            )
            response = await asyncio.to_thread(self.sendgrid_client.send, message)
            logger.info(f"Email sent successfully. Status: {response.status_code}")
            return response.status_code in (200, 202)
        except Exception as e:
            logger.error(f"Failed to send email: {str(e)}")
            return False

    # --- Account emails ---

    async def send_welcome_email(self, user: User, verification_token: str) -> bool:
        """Send welcome email with the email verification link"""
        link = f"{settings.FRONTEND_URL}/verify-email?token={verification_token}"
        body = f"""
                <p>Thank you for creating an account with MediBook.</p>
                <p>Please confirm your email address: <a href="{link}">{link}</a></p>
                <p>The link expires in 24 hours.</p>
        """
        return await self.send_email(user.email, "Welcome to MediBook!", _wrap("Welcome to MediBook!", user.name, body))

    async def send_password_reset_email(self, user: User, reset_token: str) -> bool:
        link = f"{settings.FRONTEND_URL}/reset-password?token={reset_token}"
        body = f"""
                <p>We received a request to reset your password.</p>
                <p><a href="{link}">Choose a new password</a>. The link expires in 10 minutes.</p>
                <p>If you did not request this, you can ignore this email.</p>
        """
        return await self.send_email(user.email, "Password Reset - MediBook", _wrap("Password Reset", user.name, body))

    # --- Appointment notifications ---

    async def send_booking_confirmation(self, patient: User, doctor: User, appointment: Appointment) -> dict:
        date_str = format_slot(appointment)

        sms_message = (
            f"MediBook: Your appointment request with Dr. {doctor.name} for {date_str} was received. "
            f"Reply STOP to unsubscribe."
        )
        body = f"""
                <p>Your appointment request has been received:</p>
                <ul>
                    <li><strong>Date &amp; Time:</strong> {date_str}</li>
                    <li><strong>Doctor:</strong> Dr. {doctor.name}</li>
                    <li><strong>Type:</strong> {appointment.appointment_type}</li>
                    <li><strong>Fee:</strong> {appointment.consultation_fee:.2f}</li>
                </ul>
                <p>You will be notified once the doctor confirms it.</p>
        """

        sms_sent = await self.send_sms(patient.phone, sms_message) if patient.phone else False
        email_sent = await self.send_email(
            patient.email, "Appointment Requested - MediBook", _wrap("Appointment Requested", patient.name, body)
        )
        reminder_scheduled = self.schedule_reminder(appointment)

        return {
            "sms_sent": sms_sent,
            "email_sent": email_sent,
            "reminder_scheduled": reminder_scheduled
        }

    async def send_status_update(self, patient: User, doctor: User, appointment: Appointment) -> bool:
        body = f"""
                <p>Dr. {doctor.name} updated your appointment on {format_slot(appointment)}.</p>
                <p>New status: <strong>{appointment.status}</strong></p>
        """
        if appointment.status in ("cancelled", "rejected", "completed"):
            self.cancel_reminder(appointment.id)
        return await self.send_email(
            patient.email, "Appointment Update - MediBook", _wrap("Appointment Update", patient.name, body)
        )

    async def send_cancellation_email(self, recipient: User, doctor: User, appointment: Appointment) -> bool:
        """Send email when appointment is cancelled"""
        self.cancel_reminder(appointment.id)
        body = f"""
                <p>Your appointment has been cancelled:</p>
                <ul>
                    <li><strong>Date &amp; Time:</strong> {format_slot(appointment)}</li>
                    <li><strong>Doctor:</strong> Dr. {doctor.name}</li>
                </ul>
                <p>If you need to schedule a new appointment, please log in to your account.</p>
        """
        return await self.send_email(
            recipient.email, "Appointment Cancelled - MediBook", _wrap("Appointment Cancelled", recipient.name, body)
        )

    async def send_reschedule_email(
        self,
        patient: User,
        doctor: User,
        old_appointment: Appointment,
        new_appointment: Appointment,
    ) -> bool:
        """Send email when appointment is rescheduled"""
        self.cancel_reminder(old_appointment.id)
        self.schedule_reminder(new_appointment)
        body = f"""
                <p>Your appointment has been rescheduled:</p>
                <ul>
                    <li><strong>Previous Date &amp; Time:</strong> <s>{format_slot(old_appointment)}</s></li>
                    <li><strong>New Date &amp; Time:</strong> <span style="color: #10b981; font-weight: bold;">{format_slot(new_appointment)}</span></li>
                    <li><strong>Doctor:</strong> Dr. {doctor.name}</li>
                </ul>
        """
        return await self.send_email(
            patient.email, "Appointment Rescheduled - MediBook", _wrap("Appointment Rescheduled", patient.name, body)
        )

    async def send_reminder(self, patient: User, doctor: User, appointment: Appointment) -> bool:
        date_str = format_slot(appointment)
        if patient.phone:
            await self.send_sms(patient.phone, f"MediBook reminder: appointment with Dr. {doctor.name} on {date_str}.")
        body = f"<p>This is a reminder of your appointment with Dr. {doctor.name} on {date_str}.</p>"
        return await self.send_email(
            patient.email, "Appointment Reminder - MediBook", _wrap("Appointment Reminder", patient.name, body)
        )

    # --- Reminder jobs ---

    def schedule_reminder(self, appointment: Appointment) -> bool:
        if not self.scheduler.running:
            return False

        run_at = appointment.scheduled_at - timedelta(hours=settings.REMINDER_HOURS_BEFORE)
        if run_at <= utcnow():
            return False

        self.scheduler.add_job(
            send_appointment_reminder,
            "date",
            run_date=run_at,
            timezone="UTC",
            args=[appointment.id],
            id=f"reminder-{appointment.id}",
            replace_existing=True,
        )
        logger.info(f"Reminder for appointment {appointment.id} scheduled at {run_at} UTC")
        return True

    def cancel_reminder(self, appointment_id: Optional[int]):
        if appointment_id is None or not self.scheduler.running:
            return
        try:
            self.scheduler.remove_job(f"reminder-{appointment_id}")
        except JobLookupError:
            pass


notification_service = NotificationService()
