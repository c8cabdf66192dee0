from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Optional, Protocol


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AppointmentType(str, Enum):
    SCHEDULED = "scheduled"
    INSTANT = "instant"  # Join Now


class ConsultationType(str, Enum):
    VIDEO = "video"
    CHAT = "chat"


class OrderBy(str, Enum):
    SCHEDULED_TIME = "scheduled_time"
    WAITING_ROOM_JOINED_AT = "waiting_room_joined_at"


ACTIVE_STATUSES: FrozenSet[AppointmentStatus] = frozenset(
    {AppointmentStatus.SCHEDULED, AppointmentStatus.IN_PROGRESS}
)


@dataclass
class IntakeData:
    """Questionnaire answers captured at booking time."""

    symptoms: Optional[List[str]] = None
    severity: Optional[str] = None
    duration: Optional[str] = None
    ai_recommendation: Optional[str] = None
    recommended_specializations: Optional[List[str]] = None
    ai_summary: Optional[str] = None


@dataclass
class AppointmentDto:
    id: str
    patient_id: str
    practitioner_id: str
    scheduled_time: datetime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    appointment_type: AppointmentType = AppointmentType.SCHEDULED
    consultation_type: ConsultationType = ConsultationType.VIDEO
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    waiting_room_joined_at: Optional[datetime] = None
    waiting_room_left_at: Optional[datetime] = None
    notes: Optional[str] = None
    intake: Optional[IntakeData] = None
    prescription_id: Optional[str] = None
    is_paid: bool = False
    payment_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self.waiting_room_joined_at is not None and self.waiting_room_left_at is None

    def copy_with(self, **changes: Any) -> "AppointmentDto":
        return replace(self, **changes)


@dataclass
class AppointmentFilter:
    practitioner_id: Optional[str] = None
    patient_id: Optional[str] = None
    statuses: Optional[FrozenSet[AppointmentStatus]] = None
    scheduled_after: Optional[datetime] = None

    def matches(self, appt: AppointmentDto) -> bool:
        if self.practitioner_id is not None and appt.practitioner_id != self.practitioner_id:
            return False
        if self.patient_id is not None and appt.patient_id != self.patient_id:
            return False
        if self.statuses is not None and appt.status not in self.statuses:
            return False
        if self.scheduled_after is not None and appt.scheduled_time <= self.scheduled_after:
            return False
        return True


class AppointmentsRepository(Protocol):
    """Access contract to the appointment document store.

    Subscriptions deliver the current state first and then a fresh snapshot on
    every change. Delivery is at-least-once and eventually consistent, so
    consumers must tolerate repeated snapshots.
    """

    async def get(self, appointment_id: str) -> Optional[AppointmentDto]:
        ...

    async def query(self, filters: AppointmentFilter, order_by: OrderBy = OrderBy.SCHEDULED_TIME) -> List[AppointmentDto]:
        ...

    def subscribe(self, appointment_id: str) -> AsyncIterator[Optional[AppointmentDto]]:
        ...

    def subscribe_query(self, filters: AppointmentFilter, order_by: OrderBy = OrderBy.SCHEDULED_TIME) -> AsyncIterator[List[AppointmentDto]]:
        ...

    async def create(self, appointment: AppointmentDto) -> AppointmentDto:
        """Insert a new document; raises ValidationError if the id is taken."""
        ...

    async def create_if_slot_free(self, appointment: AppointmentDto, window_minutes: int) -> bool:
        """Insert only if no active appointment of the practitioner is within the window.

        Check and insert happen in one transaction. Returns False on conflict.
        """
        ...

    async def update(
        self,
        appointment_id: str,
        changes: Dict[str, Any],
        expected_statuses: Optional[FrozenSet[AppointmentStatus]] = None,
        require_not_waiting: bool = False,
    ) -> Optional[AppointmentDto]:
        """Apply a single-document field update.

        With ``expected_statuses`` the write only happens if the stored status
        is still one of them. With ``require_not_waiting`` it only happens if
        the patient is not currently in the waiting room. Returns the updated
        document, or None when the document is missing or a precondition failed.
        """
        ...
