import asyncio
import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, FrozenSet, List, Optional, TypeVar

from sqlalchemy import or_, update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .....db.models import Appointment, PractitionerBookingLock
from .....exceptions import TransientIOError, ValidationError
from .....application.ports.appointments_repo import (
    ACTIVE_STATUSES,
    AppointmentDto,
    AppointmentFilter,
    AppointmentStatus,
    AppointmentType,
    AppointmentsRepository,
    ConsultationType,
    IntakeData,
    OrderBy,
)
from ....realtime.change_feed import ChangeFeed

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields that ``update`` may touch
_UPDATABLE = {
    "status",
    "updated_at",
    "waiting_room_joined_at",
    "waiting_room_left_at",
    "notes",
    "prescription_id",
    "is_paid",
    "payment_id",
}


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive values
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dump_list(values: Optional[List[str]]) -> Optional[str]:
    return json.dumps(values) if values is not None else None


def _load_list(raw: Optional[str]) -> Optional[List[str]]:
    return json.loads(raw) if raw else None


def _to_column(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _to_db_time(value)
    return value


class SqlAppointmentsRepository(AppointmentsRepository):
    """SQLModel-backed appointment store.

    Blocking database work runs in worker threads, each call with its own
    short-lived session. Committed writes are published on the change feed.
    """

    def __init__(self, engine: Engine, feed: ChangeFeed):
        self.engine = engine
        self.feed = feed
        # Serialises writes within this process; for bookings the lock row does it across processes
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def _appt_to_dto(self, a: Appointment) -> AppointmentDto:
        intake = None
        if any(v is not None for v in (a.symptoms, a.severity, a.duration, a.ai_recommendation, a.recommended_specializations, a.ai_summary)):
            intake = IntakeData(
                symptoms=_load_list(a.symptoms),
                severity=a.severity,
                duration=a.duration,
                ai_recommendation=a.ai_recommendation,
                recommended_specializations=_load_list(a.recommended_specializations),
                ai_summary=a.ai_summary,
            )
        return AppointmentDto(
            id=a.id,
            patient_id=a.patient_id,
            practitioner_id=a.practitioner_id,
            scheduled_time=_from_db_time(a.scheduled_time),
            status=AppointmentStatus(a.status),
            appointment_type=AppointmentType(a.appointment_type),
            consultation_type=ConsultationType(a.consultation_type),
            created_at=_from_db_time(a.created_at),
            updated_at=_from_db_time(a.updated_at),
            waiting_room_joined_at=_from_db_time(a.waiting_room_joined_at),
            waiting_room_left_at=_from_db_time(a.waiting_room_left_at),
            notes=a.notes,
            intake=intake,
            prescription_id=a.prescription_id,
            is_paid=bool(a.is_paid),
            payment_id=a.payment_id,
        )

    def _dto_to_row(self, d: AppointmentDto) -> Appointment:
        intake = d.intake or IntakeData()
        return Appointment(
            id=d.id,
            patient_id=d.patient_id,
            practitioner_id=d.practitioner_id,
            scheduled_time=_to_db_time(d.scheduled_time),
            appointment_type=d.appointment_type.value,
            consultation_type=d.consultation_type.value,
            status=d.status.value,
            created_at=_to_db_time(d.created_at),
            updated_at=_to_db_time(d.updated_at),
            waiting_room_joined_at=_to_db_time(d.waiting_room_joined_at),
            waiting_room_left_at=_to_db_time(d.waiting_room_left_at),
            notes=d.notes,
            symptoms=_dump_list(intake.symptoms),
            severity=intake.severity,
            duration=intake.duration,
            ai_recommendation=intake.ai_recommendation,
            recommended_specializations=_dump_list(intake.recommended_specializations),
            ai_summary=intake.ai_summary,
            prescription_id=d.prescription_id,
            is_paid=d.is_paid,
            payment_id=d.payment_id,
        )

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as e:
            logger.error(f"Appointment store error in {fn.__name__}: {e}")
            raise TransientIOError() from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _get_sync(self, appointment_id: str) -> Optional[AppointmentDto]:
        with Session(self.engine) as session:
            a = session.get(Appointment, appointment_id)
            return self._appt_to_dto(a) if a else None

    def _query_sync(self, filters: AppointmentFilter, order_by: OrderBy) -> List[AppointmentDto]:
        stmt = select(Appointment)
        if filters.practitioner_id is not None:
            stmt = stmt.where(Appointment.practitioner_id == filters.practitioner_id)
        if filters.patient_id is not None:
            stmt = stmt.where(Appointment.patient_id == filters.patient_id)
        if filters.statuses is not None:
            stmt = stmt.where(Appointment.status.in_([s.value for s in filters.statuses]))
        if filters.scheduled_after is not None:
            stmt = stmt.where(Appointment.scheduled_time > _to_db_time(filters.scheduled_after))

        if order_by == OrderBy.WAITING_ROOM_JOINED_AT:
            stmt = stmt.order_by(Appointment.waiting_room_joined_at.asc(), Appointment.scheduled_time.asc())
        else:
            stmt = stmt.order_by(Appointment.scheduled_time.asc())

        with Session(self.engine) as session:
            rows = session.exec(stmt).all()
            return [self._appt_to_dto(r) for r in rows]

    async def get(self, appointment_id: str) -> Optional[AppointmentDto]:
        return await self._run(self._get_sync, appointment_id)

    async def query(self, filters: AppointmentFilter, order_by: OrderBy = OrderBy.SCHEDULED_TIME) -> List[AppointmentDto]:
        return await self._run(self._query_sync, filters, order_by)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(self, appointment_id: str) -> AsyncIterator[Optional[AppointmentDto]]:
        # Listen before the first read so no change slips in between
        async with self.feed.listen() as queue:
            yield await self.get(appointment_id)
            while True:
                snapshot = await queue.get()
                if snapshot.id == appointment_id:
                    yield snapshot

    async def subscribe_query(self, filters: AppointmentFilter, order_by: OrderBy = OrderBy.SCHEDULED_TIME) -> AsyncIterator[List[AppointmentDto]]:
        async with self.feed.listen() as queue:
            yield await self.query(filters, order_by)
            while True:
                snapshot = await queue.get()
                # Re-query on any change for the same participant, including
                # documents that just stopped matching the status filter
                if filters.practitioner_id is not None and snapshot.practitioner_id != filters.practitioner_id:
                    continue
                if filters.patient_id is not None and snapshot.patient_id != filters.patient_id:
                    continue
                yield await self.query(filters, order_by)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _create_sync(self, appointment: AppointmentDto) -> AppointmentDto:
        with self._write_lock, Session(self.engine) as session:
            if session.get(Appointment, appointment.id) is not None:
                raise ValidationError(f"Appointment {appointment.id} already exists")
            session.add(self._dto_to_row(appointment))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise ValidationError(f"Appointment {appointment.id} already exists")
            return appointment

    def _lock_practitioner(self, session: Session, practitioner_id: str) -> None:
        lock = session.exec(
            select(PractitionerBookingLock)
            .where(PractitionerBookingLock.practitioner_id == practitioner_id)
            .with_for_update()
        ).first()
        if lock is None:
            lock = PractitionerBookingLock(practitioner_id=practitioner_id, version=0)
        lock.version += 1
        session.add(lock)
        session.flush()

    def _create_if_slot_free_sync(self, appointment: AppointmentDto, window_minutes: int) -> bool:
        window = timedelta(minutes=window_minutes)
        scheduled = _to_db_time(appointment.scheduled_time)

        with self._write_lock:
            for attempt in range(2):
                with Session(self.engine) as session:
                    try:
                        self._lock_practitioner(session, appointment.practitioner_id)
                    except IntegrityError:
                        # Another process created the lock row first; its row lock now applies
                        session.rollback()
                        continue

                    clash = session.exec(
                        select(Appointment)
                        .where(Appointment.practitioner_id == appointment.practitioner_id)
                        .where(Appointment.status.in_([s.value for s in ACTIVE_STATUSES]))
                        .where(Appointment.scheduled_time > scheduled - window)
                        .where(Appointment.scheduled_time < scheduled + window)
                    ).first()
                    if clash is not None:
                        session.rollback()
                        return False

                    if session.get(Appointment, appointment.id) is not None:
                        session.rollback()
                        raise ValidationError(f"Appointment {appointment.id} already exists")

                    session.add(self._dto_to_row(appointment))
                    session.commit()
                    return True

        raise TransientIOError()

    def _update_sync(
        self,
        appointment_id: str,
        changes: Dict[str, Any],
        expected_statuses: Optional[FrozenSet[AppointmentStatus]],
        require_not_waiting: bool,
    ) -> Optional[AppointmentDto]:
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")

        stmt = sa_update(Appointment).where(Appointment.id == appointment_id)
        if expected_statuses is not None:
            # Compare-and-set on status so racing transitions cannot both win
            stmt = stmt.where(Appointment.status.in_([s.value for s in expected_statuses]))
        if require_not_waiting:
            stmt = stmt.where(or_(
                Appointment.waiting_room_joined_at.is_(None),
                Appointment.waiting_room_left_at.is_not(None),
            ))
        stmt = stmt.values(**{k: _to_column(v) for k, v in changes.items()})

        with self._write_lock, Session(self.engine) as session:
            result = session.connection().execute(stmt)
            if result.rowcount == 0:
                session.rollback()
                return None
            session.commit()
            a = session.get(Appointment, appointment_id)
            return self._appt_to_dto(a) if a else None

    async def create(self, appointment: AppointmentDto) -> AppointmentDto:
        created = await self._run(self._create_sync, appointment)
        self.feed.publish(created)
        return created

    async def create_if_slot_free(self, appointment: AppointmentDto, window_minutes: int) -> bool:
        ok = await self._run(self._create_if_slot_free_sync, appointment, window_minutes)
        if ok:
            self.feed.publish(appointment)
        return ok

    async def update(
        self,
        appointment_id: str,
        changes: Dict[str, Any],
        expected_statuses: Optional[FrozenSet[AppointmentStatus]] = None,
        require_not_waiting: bool = False,
    ) -> Optional[AppointmentDto]:
        updated = await self._run(self._update_sync, appointment_id, changes, expected_statuses, require_not_waiting)
        if updated is not None:
            self.feed.publish(updated)
        return updated
