from dataclasses import dataclass
from typing import Any, Dict, List
import logging

from ..ports.appointments_repo import AppointmentDto
from ..ports.notifier import NotificationKind, NotificationSender

logger = logging.getLogger(__name__)


@dataclass
class NotificationHelper:
    """Fire-and-forget notifications for appointment events.

    Delivery failures are logged and swallowed; they never fail or roll back
    the lifecycle mutation that triggered them.
    """

    sender: NotificationSender

    async def _send(self, user_ids: List[str], kind: NotificationKind, payload: Dict[str, Any]) -> None:
        for user_id in user_ids:
            try:
                await self.sender.notify(user_id, kind, payload)
            except Exception as e:
                logger.warning(f"Error sending {kind.value} notification to {user_id}: {e}")

    async def appointment_booked(self, appt: AppointmentDto) -> None:
        await self._send(
            [appt.practitioner_id],
            NotificationKind.APPOINTMENT_BOOKED,
            {
                "appointmentId": appt.id,
                "patientId": appt.patient_id,
                "scheduledTime": appt.scheduled_time.isoformat(),
            },
        )

    async def appointment_started(self, appt: AppointmentDto) -> None:
        await self._send(
            [appt.patient_id],
            NotificationKind.APPOINTMENT_STARTED,
            {"appointmentId": appt.id, "practitionerId": appt.practitioner_id},
        )

    async def appointment_cancelled(self, appt: AppointmentDto) -> None:
        await self._send(
            [appt.patient_id, appt.practitioner_id],
            NotificationKind.APPOINTMENT_CANCELLED,
            {"appointmentId": appt.id},
        )

    async def status_changed(self, appt: AppointmentDto) -> None:
        await self._send(
            [appt.patient_id, appt.practitioner_id],
            NotificationKind.APPOINTMENT_STATUS_CHANGED,
            {"appointmentId": appt.id, "status": appt.status.value},
        )

    async def patient_waiting(self, appt: AppointmentDto) -> None:
        joined = appt.waiting_room_joined_at.isoformat() if appt.waiting_room_joined_at else None
        await self._send(
            [appt.practitioner_id],
            NotificationKind.PATIENT_WAITING,
            {"appointmentId": appt.id, "patientId": appt.patient_id, "joinedAt": joined},
        )

    async def prescription_attached(self, appt: AppointmentDto) -> None:
        await self._send(
            [appt.patient_id],
            NotificationKind.PRESCRIPTION_ATTACHED,
            {"appointmentId": appt.id, "prescriptionId": appt.prescription_id, "practitionerId": appt.practitioner_id},
        )
