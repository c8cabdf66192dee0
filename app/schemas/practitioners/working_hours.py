# app/schemas/practitioners/working_hours.py
from pydantic import BaseModel, Field, field_validator
from typing import Dict, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ...application.policies import format_wall_clock, parse_wall_clock
from ...application.ports.working_hours_repo import WEEK_DAYS, DaySchedule, WorkingHoursDto
from ..appointments.appointment import AppointmentResponse

_HH_MM = r"^([01]\d|2[0-3]):[0-5]\d$"

class DayHours(BaseModel):
    enabled: bool = True
    start: str = Field(default="09:00", pattern=_HH_MM)
    end: str = Field(default="17:00", pattern=_HH_MM)

class WorkingHoursPayload(BaseModel):
    # Day name -> hours, e.g. {"Monday": {"enabled": true, "start": "09:00", "end": "17:00"}}
    days: Dict[str, DayHours] = {}
    timezone: str = "UTC"

    @field_validator("days")
    @classmethod
    def validate_day_names(cls, v):
        unknown = [d for d in v if d not in WEEK_DAYS]
        if unknown:
            raise ValueError(f"Unknown day name(s): {', '.join(unknown)}")
        for name, hours in v.items():
            if hours.enabled and parse_wall_clock(hours.start) > parse_wall_clock(hours.end):
                raise ValueError(f"{name}: start must not be after end")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    def to_dto(self, practitioner_id: str) -> WorkingHoursDto:
        return WorkingHoursDto(
            practitioner_id=practitioner_id,
            days={
                name: DaySchedule(
                    enabled=hours.enabled,
                    start=parse_wall_clock(hours.start),
                    end=parse_wall_clock(hours.end),
                )
                for name, hours in self.days.items()
            },
            timezone=self.timezone,
        )

class WorkingHoursResponse(WorkingHoursPayload):
    practitioner_id: str

    @classmethod
    def from_dto(cls, hours: WorkingHoursDto) -> "WorkingHoursResponse":
        return cls(
            practitioner_id=hours.practitioner_id,
            days={
                name: DayHours(
                    enabled=day.enabled,
                    start=format_wall_clock(day.start),
                    end=format_wall_clock(day.end),
                )
                for name, day in hours.days.items()
            },
            timezone=hours.timezone,
        )

class WaitingRoomResponse(BaseModel):
    practitioner_id: str
    waiting: List[AppointmentResponse]
