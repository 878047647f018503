from datetime import datetime, date, timezone
from typing import List, Optional

from sqlalchemy import Column, Index, JSON, UniqueConstraint, text
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    password_hash: str
    phone: str
    role: str = Field(default="patient", index=True)  # patient, doctor, admin
    is_verified: bool = Field(default=False)
    is_active: bool = Field(default=True)
    address: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    failed_login_attempts: int = Field(default=0)
    locked_until: Optional[datetime] = Field(default=None)
    last_failed_login_at: Optional[datetime] = Field(default=None)

    last_active: Optional[datetime] = Field(default=None)

    # Doctor fields
    specialization: Optional[str] = None
    experience: Optional[int] = None
    education: Optional[str] = None
    hospital: Optional[str] = None
    city: Optional[str] = None
    consultation_fee: Optional[float] = None
    availability: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    online_consultation: bool = Field(default=False)
    offline_consultation: bool = Field(default=True)
    rating: float = Field(default=0)
    total_reviews: int = Field(default=0)

    # Patient fields
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None  # male, female, other

    email_verification_token: Optional[str] = Field(default=None, index=True)
    email_verification_expire: Optional[datetime] = None
    reset_password_token: Optional[str] = Field(default=None, index=True)
    reset_password_expire: Optional[datetime] = None


class Appointment(SQLModel, table=True):
    # At most one pending/confirmed appointment per doctor slot
    __table_args__ = (
        Index(
            "uq_appointment_active_slot",
            "doctor_id",
            "appointment_date",
            "appointment_time",
            unique=True,
            sqlite_where=text("status IN ('pending', 'confirmed')"),
            postgresql_where=text("status IN ('pending', 'confirmed')"),
        ),
        Index("ix_appointment_patient_date", "patient_id", "appointment_date"),
        Index("ix_appointment_status_date", "status", "appointment_date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="user.id", index=True)
    doctor_id: int = Field(foreign_key="user.id", index=True)
    appointment_date: date
    appointment_time: str  # HH:MM in the clinic timezone
    scheduled_at: datetime  # same instant in UTC
    appointment_type: str  # online, offline
    consultation_type: str = Field(default="general")  # general, follow-up, emergency, routine
    status: str = Field(default="pending")  # pending, confirmed, cancelled, completed, rejected
    symptoms: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=500)
    doctor_notes: Optional[str] = Field(default=None, max_length=1000)
    prescription: Optional[str] = Field(default=None, max_length=1000)
    follow_up_date: Optional[date] = None
    consultation_fee: float
    is_rescheduled: bool = Field(default=False)
    rescheduled_from: Optional[int] = Field(default=None, foreign_key="appointment.id")
    cancellation_reason: Optional[str] = Field(default=None, max_length=500)
    cancelled_by: Optional[str] = None  # patient, doctor, admin
    reminder_sent: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Review(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("appointment_id", name="uq_review_appointment"),
        UniqueConstraint("patient_id", "doctor_id", name="uq_review_patient_doctor"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="user.id", index=True)
    doctor_id: int = Field(foreign_key="user.id", index=True)
    appointment_id: int = Field(foreign_key="appointment.id")
    rating: int
    title: Optional[str] = Field(default=None, max_length=100)
    comment: Optional[str] = Field(default=None, max_length=500)
    is_anonymous: bool = Field(default=False)
    is_hidden: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)


class BlogPost(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(max_length=200)
    slug: str = Field(index=True, unique=True)
    content: str
    excerpt: Optional[str] = Field(default=None, max_length=300)
    author_id: int = Field(foreign_key="user.id", index=True)
    category: str = Field(index=True)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    featured_image: str = Field(default="")
    status: str = Field(default="draft", index=True)  # draft, published, archived
    is_featured: bool = Field(default=False)
    published_at: Optional[datetime] = None
    reading_time: int = Field(default=0)
    views: int = Field(default=0)
    likes: int = Field(default=0)
    shares: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RateLimitHit(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    key: str = Field(index=True)
    hit_at: datetime = Field(index=True)
