from enum import Enum
from typing import Any, Dict, Protocol


class NotificationKind(str, Enum):
    APPOINTMENT_BOOKED = "appointment_booked"
    APPOINTMENT_STARTED = "appointment_started"
    APPOINTMENT_STATUS_CHANGED = "appointment_status_changed"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    PATIENT_WAITING = "patient_waiting"
    PRESCRIPTION_ATTACHED = "prescription_attached"


class NotificationSender(Protocol):
    async def notify(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        ...
