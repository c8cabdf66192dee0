import asyncio
import json
import logging
from typing import Any, Dict

from sqlalchemy.engine import Engine
from sqlmodel import Session

from ...db.models import Notification
from ...application.ports.notifier import NotificationKind, NotificationSender

logger = logging.getLogger(__name__)

_TEMPLATES = {
    NotificationKind.APPOINTMENT_BOOKED: ("New Appointment Booked", "You have a new appointment scheduled with a patient."),
    NotificationKind.APPOINTMENT_STARTED: ("Appointment Started", "Your practitioner has started your appointment. You can join now."),
    NotificationKind.APPOINTMENT_STATUS_CHANGED: ("Appointment Status Updated", "Appointment status has been updated."),
    NotificationKind.APPOINTMENT_CANCELLED: ("Appointment Cancelled", "An appointment has been cancelled."),
    NotificationKind.PATIENT_WAITING: ("Patient Waiting", "A patient is waiting for you in the waiting room."),
    NotificationKind.PRESCRIPTION_ATTACHED: ("New Prescription", "Your practitioner has issued a prescription for your appointment."),
}


class SqlNotificationSender(NotificationSender):
    """Writes notifications to the in-app inbox table.

    Push delivery picks rows up from there; it is not done here.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def _insert_sync(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        title, message = _TEMPLATES[kind]
        if kind == NotificationKind.APPOINTMENT_STATUS_CHANGED and payload.get("status"):
            message = f"Appointment status has been updated to: {str(payload['status']).replace('_', ' ').upper()}"
        with Session(self.engine) as session:
            session.add(Notification(
                user_id=user_id,
                type=kind.value,
                title=title,
                message=message,
                data=json.dumps(payload),
            ))
            session.commit()

    async def notify(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._insert_sync, user_id, kind, payload)
        logger.debug(f"Queued {kind.value} notification for {user_id}")
