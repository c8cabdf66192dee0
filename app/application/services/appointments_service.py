from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional
import logging

from ...exceptions import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    UnavailableError,
    ValidationError,
)
from ..policies import (
    NOT_AVAILABLE_MESSAGE,
    TERMINAL_STATUSES,
    can_transition,
    ensure_utc,
    sources_for,
)
from ..ports.appointments_repo import (
    ACTIVE_STATUSES,
    AppointmentDto,
    AppointmentFilter,
    AppointmentStatus,
    AppointmentType,
    AppointmentsRepository,
)
from ..ports.clock import Clock
from .availability_service import AvailabilityService
from .notification_helper import NotificationHelper

logger = logging.getLogger(__name__)

_VERBS = {
    AppointmentStatus.IN_PROGRESS: "start",
    AppointmentStatus.COMPLETED: "complete",
    AppointmentStatus.CANCELLED: "cancel",
}


def _label(status: AppointmentStatus) -> str:
    return status.value.replace("_", " ")


def _transition_error(current: AppointmentStatus, target: AppointmentStatus) -> InvalidStateError:
    if current in TERMINAL_STATUSES:
        return InvalidStateError(f"Appointment is already {_label(current)}")
    return InvalidStateError(f"Cannot {_VERBS[target]} an appointment that is {_label(current)}")


def require_actor(actor_id: Optional[str], allowed: Iterable[str], detail: str) -> None:
    """Reject the call when an actor is given and is not one of ``allowed``."""
    if actor_id is not None and actor_id not in set(allowed):
        raise PermissionDeniedError(detail)


@dataclass
class AppointmentsService:
    """Owns the appointment state machine and the sanctioned mutations."""

    repo: AppointmentsRepository
    availability: AvailabilityService
    notifications: NotificationHelper
    clock: Clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _prepare_new(self, appointment: AppointmentDto, now: datetime) -> AppointmentDto:
        scheduled_time = appointment.scheduled_time
        if scheduled_time is None and appointment.appointment_type == AppointmentType.INSTANT:
            scheduled_time = now

        missing = []
        if not appointment.patient_id:
            missing.append("patient_id")
        if not appointment.practitioner_id:
            missing.append("practitioner_id")
        if scheduled_time is None:
            missing.append("scheduled_time")
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if not appointment.id:
            raise ValidationError("Appointment id is required")

        scheduled_time = ensure_utc(scheduled_time)
        if scheduled_time < now:
            raise ValidationError("Cannot book appointments in the past")

        return appointment.copy_with(
            scheduled_time=scheduled_time,
            status=AppointmentStatus.SCHEDULED,
            created_at=now,
            updated_at=now,
            waiting_room_joined_at=None,
            waiting_room_left_at=None,
        )

    async def create(self, appointment: AppointmentDto, actor_id: Optional[str] = None) -> AppointmentDto:
        """Persist a new appointment without re-deriving availability.

        Callers are expected to have checked availability beforehand; use
        ``book`` for the checked variant.
        """
        appt = self._prepare_new(appointment, self.clock.now())
        require_actor(actor_id, [appt.patient_id], "Appointments can only be booked for yourself")
        created = await self.repo.create(appt)
        logger.info(f"Appointment {created.id} created for practitioner {created.practitioner_id} at {created.scheduled_time.isoformat()}")
        await self.notifications.appointment_booked(created)
        return created

    async def book(self, appointment: AppointmentDto, actor_id: Optional[str] = None) -> AppointmentDto:
        """Check availability and create in one conditional store write."""
        appt = self._prepare_new(appointment, self.clock.now())
        require_actor(actor_id, [appt.patient_id], "Appointments can only be booked for yourself")

        result = await self.availability.check(appt.practitioner_id, appt.scheduled_time)
        if not result.available:
            raise UnavailableError(result.reason or NOT_AVAILABLE_MESSAGE)

        # Re-checked inside the store transaction; closes the gap between check and insert
        if not await self.repo.create_if_slot_free(appt, self.availability.conflict_window_minutes):
            logger.info(f"Booking {appt.id} lost the race for practitioner {appt.practitioner_id}")
            raise UnavailableError("Practitioner is no longer available at this time. Please choose another time.")

        logger.info(f"Appointment {appt.id} booked for practitioner {appt.practitioner_id} at {appt.scheduled_time.isoformat()}")
        await self.notifications.appointment_booked(appt)
        return appt

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _transition(self, appointment_id: str, target: AppointmentStatus, appt: AppointmentDto) -> AppointmentDto:
        if not can_transition(appt.status, target):
            raise _transition_error(appt.status, target)

        updated = await self.repo.update(
            appointment_id,
            {"status": target, "updated_at": self.clock.now()},
            expected_statuses=sources_for(target),
        )
        if updated is None:
            # Someone else moved the appointment between our read and write
            latest = await self.repo.get(appointment_id)
            if latest is None:
                raise NotFoundError()
            raise _transition_error(latest.status, target)

        logger.info(f"Appointment {appointment_id}: {appt.status.value} -> {target.value}")
        return updated

    async def cancel(self, appointment_id: str, actor_id: Optional[str] = None) -> AppointmentDto:
        appt = await self.get(appointment_id)
        require_actor(actor_id, [appt.patient_id, appt.practitioner_id], "Only participants can cancel this appointment")
        updated = await self._transition(appointment_id, AppointmentStatus.CANCELLED, appt)
        await self.notifications.appointment_cancelled(updated)
        return updated

    async def start(self, appointment_id: str, actor_id: Optional[str] = None) -> AppointmentDto:
        appt = await self.get(appointment_id)
        require_actor(actor_id, [appt.practitioner_id], "Only the assigned practitioner can start this appointment")
        updated = await self._transition(appointment_id, AppointmentStatus.IN_PROGRESS, appt)
        await self.notifications.appointment_started(updated)
        return updated

    async def complete(self, appointment_id: str, actor_id: Optional[str] = None) -> AppointmentDto:
        appt = await self.get(appointment_id)
        require_actor(actor_id, [appt.practitioner_id], "Only the assigned practitioner can complete this appointment")
        updated = await self._transition(appointment_id, AppointmentStatus.COMPLETED, appt)
        await self.notifications.status_changed(updated)
        return updated

    # ------------------------------------------------------------------
    # Record keeping
    # ------------------------------------------------------------------

    async def mark_paid(self, appointment_id: str, payment_id: str) -> AppointmentDto:
        if not payment_id:
            raise ValidationError("Payment id is required")
        updated = await self.repo.update(
            appointment_id,
            {"is_paid": True, "payment_id": payment_id, "updated_at": self.clock.now()},
        )
        if updated is None:
            raise NotFoundError()
        return updated

    async def attach_prescription(self, appointment_id: str, prescription_id: str, actor_id: Optional[str] = None) -> AppointmentDto:
        if not prescription_id:
            raise ValidationError("Prescription id is required")
        appt = await self.get(appointment_id)
        require_actor(actor_id, [appt.practitioner_id], "Only the assigned practitioner can attach a prescription")
        updated = await self.repo.update(
            appointment_id,
            {"prescription_id": prescription_id, "updated_at": self.clock.now()},
        )
        if updated is None:
            raise NotFoundError()
        await self.notifications.prescription_attached(updated)
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, appointment_id: str) -> AppointmentDto:
        appt = await self.repo.get(appointment_id)
        if not appt:
            raise NotFoundError()
        return appt

    async def get_for_participant(self, appointment_id: str, user_id: str) -> AppointmentDto:
        appt = await self.get(appointment_id)
        if user_id not in (appt.patient_id, appt.practitioner_id):
            # Do not reveal appointments of other users
            raise NotFoundError()
        return appt

    async def list_for_patient(self, patient_id: str) -> List[AppointmentDto]:
        return await self.repo.query(AppointmentFilter(patient_id=patient_id))

    async def list_for_practitioner(self, practitioner_id: str) -> List[AppointmentDto]:
        return await self.repo.query(AppointmentFilter(practitioner_id=practitioner_id))

    async def upcoming_for_patient(self, patient_id: str) -> List[AppointmentDto]:
        return await self.repo.query(
            AppointmentFilter(patient_id=patient_id, statuses=ACTIVE_STATUSES, scheduled_after=self.clock.now())
        )

    async def upcoming_for_practitioner(self, practitioner_id: str) -> List[AppointmentDto]:
        return await self.repo.query(
            AppointmentFilter(practitioner_id=practitioner_id, statuses=ACTIVE_STATUSES, scheduled_after=self.clock.now())
        )

    def watch(self, appointment_id: str) -> AsyncIterator[Optional[AppointmentDto]]:
        return self.repo.subscribe(appointment_id)

    def watch_for_patient(self, patient_id: str) -> AsyncIterator[List[AppointmentDto]]:
        return self.repo.subscribe_query(AppointmentFilter(patient_id=patient_id))

    def watch_for_practitioner(self, practitioner_id: str) -> AsyncIterator[List[AppointmentDto]]:
        return self.repo.subscribe_query(AppointmentFilter(practitioner_id=practitioner_id))
