# app/db/models/health/schedule.py
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field
from datetime import datetime

from .appointment import utc_now

class PractitionerSchedule(SQLModel, table=True):
    __tablename__ = "practitioner_schedules"
    practitioner_id: str = Field(primary_key=True, max_length=128)
    # Day-name keyed JSON: {"Monday": {"enabled": true, "start": "09:00", "end": "17:00"}}
    working_hours: str = Field(default="{}")
    timezone: str = Field(default="UTC", max_length=64)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
