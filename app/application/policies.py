"""
Scheduling and lifecycle policies.

Pure business rules for appointment booking and the status state machine.
Nothing here does I/O, so every rule can be unit tested in isolation.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Dict, FrozenSet, Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .ports.appointments_repo import AppointmentDto, AppointmentStatus
from .ports.working_hours_repo import WEEK_DAYS, WorkingHoursDto


# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_CONFLICT_WINDOW_MINUTES = 30

NOT_AVAILABLE_MESSAGE = "Practitioner is not available at this time. Please choose another time."

# Allowed moves of the state machine. Terminal states map to nothing.
TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset({
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.IN_PROGRESS: frozenset({
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[AppointmentStatus] = frozenset(
    s for s, targets in TRANSITIONS.items() if not targets
)


# =============================================================================
# STATE MACHINE
# =============================================================================

def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in TRANSITIONS[current]


def sources_for(target: AppointmentStatus) -> FrozenSet[AppointmentStatus]:
    """Statuses from which ``target`` may be reached."""
    return frozenset(s for s, targets in TRANSITIONS.items() if target in targets)


def can_establish_session(appointment: AppointmentDto) -> bool:
    """A live video/chat session may only be set up while the appointment is in progress."""
    return appointment.status == AppointmentStatus.IN_PROGRESS


# =============================================================================
# TIME HELPERS
# =============================================================================

def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_wall_clock(value: str) -> time:
    """Parse an ``HH:MM`` string."""
    hours, minutes = value.split(":")
    return time(hour=int(hours), minute=int(minutes))


def format_wall_clock(value: time) -> str:
    return value.strftime("%H:%M")


# =============================================================================
# AVAILABILITY
# =============================================================================

@dataclass
class AvailabilityResult:
    available: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.available


def conflicts_with(existing: datetime, candidate: datetime, window_minutes: int) -> bool:
    # Exactly one window apart is still free
    return abs(ensure_utc(existing) - ensure_utc(candidate)) < timedelta(minutes=window_minutes)


def find_conflict(
    active: Iterable[AppointmentDto],
    candidate: datetime,
    window_minutes: int = DEFAULT_CONFLICT_WINDOW_MINUTES,
) -> Optional[AppointmentDto]:
    for appt in active:
        if appt.is_active and conflicts_with(appt.scheduled_time, candidate, window_minutes):
            return appt
    return None


def check_working_hours(hours: Optional[WorkingHoursDto], candidate: datetime) -> AvailabilityResult:
    """Check the candidate against the practitioner's weekly schedule.

    No schedule at all means no restriction. A day missing from a configured
    schedule is a disabled day. Both interval bounds are inclusive.
    """
    if hours is None or not hours.is_configured:
        return AvailabilityResult(True)

    try:
        tz = ZoneInfo(hours.timezone or "UTC")
    except ZoneInfoNotFoundError:
        tz = ZoneInfo("UTC")
    local = ensure_utc(candidate).astimezone(tz)
    day_name = WEEK_DAYS[local.weekday()]
    day = hours.days.get(day_name)

    if day is None or not day.enabled:
        return AvailabilityResult(False, f"Practitioner is not available on {day_name}")

    wall_clock = local.time().replace(second=0, microsecond=0, tzinfo=None)
    if not (day.start <= wall_clock <= day.end):
        return AvailabilityResult(
            False,
            f"Practitioner is available {format_wall_clock(day.start)} - {format_wall_clock(day.end)} on {day_name}",
        )
    return AvailabilityResult(True)
