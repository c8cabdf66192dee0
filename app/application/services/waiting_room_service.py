from dataclasses import dataclass
from datetime import timedelta
from typing import AsyncIterator, Iterable, List, Optional
import logging

from ...exceptions import NotFoundError
from ..ports.appointments_repo import (
    ACTIVE_STATUSES,
    AppointmentDto,
    AppointmentFilter,
    AppointmentsRepository,
    OrderBy,
)
from ..ports.clock import Clock
from .appointments_service import require_actor
from .notification_helper import NotificationHelper

logger = logging.getLogger(__name__)


def waiting_queue(appointments: Iterable[AppointmentDto]) -> List[AppointmentDto]:
    """Patients still waiting, earliest arrival first."""
    waiting = [a for a in appointments if a.is_waiting]
    waiting.sort(key=lambda a: a.waiting_room_joined_at)
    return waiting


@dataclass
class WaitingRoomService:
    repo: AppointmentsRepository
    notifications: NotificationHelper
    clock: Clock

    async def _get(self, appointment_id: str) -> AppointmentDto:
        appt = await self.repo.get(appointment_id)
        if not appt:
            raise NotFoundError()
        return appt

    async def join(self, appointment_id: str, actor_id: Optional[str] = None) -> AppointmentDto:
        """Record that the patient is waiting.

        Re-joining while already waiting keeps the original arrival time.
        Joining again after leaving starts a fresh wait.
        """
        appt = await self._get(appointment_id)
        require_actor(actor_id, [appt.patient_id], "Only the patient can join the waiting room")
        if appt.is_waiting:
            return appt

        now = self.clock.now()
        left_at = appt.waiting_room_left_at
        if left_at is not None and now <= left_at:
            now = left_at + timedelta(microseconds=1)

        updated = await self.repo.update(
            appointment_id,
            {"waiting_room_joined_at": now, "waiting_room_left_at": None, "updated_at": now},
            require_not_waiting=True,
        )
        if updated is None:
            # A concurrent join got there first; its arrival time stands
            return await self._get(appointment_id)

        logger.info(f"Patient {updated.patient_id} joined waiting room for appointment {appointment_id}")
        await self.notifications.patient_waiting(updated)
        return updated

    async def leave(self, appointment_id: str, actor_id: Optional[str] = None) -> AppointmentDto:
        """Record that the patient left. Succeeds in every status."""
        appt = await self._get(appointment_id)
        require_actor(actor_id, [appt.patient_id], "Only the patient can leave the waiting room")

        now = self.clock.now()
        joined_at = appt.waiting_room_joined_at
        if joined_at is not None and now < joined_at:
            now = joined_at

        updated = await self.repo.update(
            appointment_id,
            {"waiting_room_left_at": now, "updated_at": now},
        )
        if updated is None:
            raise NotFoundError()

        logger.info(f"Patient {updated.patient_id} left waiting room for appointment {appointment_id}")
        return updated

    def _waiting_filter(self, practitioner_id: str) -> AppointmentFilter:
        return AppointmentFilter(practitioner_id=practitioner_id, statuses=ACTIVE_STATUSES)

    async def list_waiting(self, practitioner_id: str) -> List[AppointmentDto]:
        rows = await self.repo.query(
            self._waiting_filter(practitioner_id), order_by=OrderBy.WAITING_ROOM_JOINED_AT
        )
        return waiting_queue(rows)

    async def watch_waiting(self, practitioner_id: str) -> AsyncIterator[List[AppointmentDto]]:
        async for rows in self.repo.subscribe_query(
            self._waiting_filter(practitioner_id), order_by=OrderBy.WAITING_ROOM_JOINED_AT
        ):
            yield waiting_queue(rows)
