"""Domain errors raised by the core services.

Each error knows the HTTP status it maps to; ``main`` renders them as
``{"detail": ..., "code": ...}``.
"""
from fastapi import status


class MediBookError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "BAD_REQUEST"
    default_message = "Request could not be processed."

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(MediBookError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Resource not found."


class DoctorNotFound(NotFound):
    code = "DOCTOR_NOT_FOUND"
    default_message = "Doctor not found."


class Forbidden(MediBookError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    default_message = "Not authorized to access this resource."


class InvalidTransition(MediBookError):
    code = "INVALID_TRANSITION"
    default_message = "This status change is not allowed."


class SlotUnavailable(MediBookError):
    code = "SLOT_UNAVAILABLE"
    default_message = "Selected time slot is not available."


class AppointmentInPast(MediBookError):
    code = "APPOINTMENT_IN_PAST"
    default_message = "Appointment date and time must be in the future."


class ConsultationTypeUnsupported(MediBookError):
    code = "CONSULTATION_TYPE_UNSUPPORTED"
    default_message = "Doctor does not offer this consultation type."


class Conflict(MediBookError):
    code = "CONFLICT"
    default_message = "Resource already exists."


class ValidationFailed(MediBookError):
    code = "VALIDATION_FAILED"
    default_message = "Validation failed."


class InvalidCredentials(MediBookError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "INVALID_CREDENTIALS"
    default_message = "Incorrect email or password."


class AccountSuspended(MediBookError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "ACCOUNT_SUSPENDED"
    default_message = "Your account is suspended. Please contact support for assistance."


class AccountLocked(MediBookError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ACCOUNT_LOCKED"

    def __init__(self, remaining_minutes: int, message: str = None):
        self.remaining_minutes = remaining_minutes
        super().__init__(
            message
            or "Account is temporarily locked due to too many failed login attempts. "
            f"Please try again in {remaining_minutes} minutes."
        )
