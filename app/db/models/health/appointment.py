# app/db/models/health/appointment.py
from typing import Optional
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"
    # Client-assigned
    id: str = Field(primary_key=True, max_length=64)
    patient_id: str = Field(index=True, max_length=128)
    practitioner_id: str = Field(index=True, max_length=128)
    # All datetimes are stored as timezone-aware UTC
    scheduled_time: datetime = Field(index=True, sa_type=DateTime(timezone=True))
    appointment_type: str = Field(default="scheduled")
    consultation_type: str = Field(default="video")
    status: str = Field(default="scheduled", index=True)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    waiting_room_joined_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    waiting_room_left_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    notes: Optional[str] = Field(default=None)

    # Intake questionnaire; list fields hold JSON arrays
    symptoms: Optional[str] = Field(default=None)
    severity: Optional[str] = Field(default=None)
    duration: Optional[str] = Field(default=None)
    ai_recommendation: Optional[str] = Field(default=None)
    recommended_specializations: Optional[str] = Field(default=None)
    ai_summary: Optional[str] = Field(default=None)

    prescription_id: Optional[str] = Field(default=None)
    is_paid: bool = Field(default=False)
    payment_id: Optional[str] = Field(default=None)


class PractitionerBookingLock(SQLModel, table=True):
    """One row per practitioner, bumped inside every booking transaction."""
    __tablename__ = "practitioner_booking_locks"
    practitioner_id: str = Field(primary_key=True, max_length=128)
    version: int = Field(default=0)
