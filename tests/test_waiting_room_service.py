from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, List, Optional

import pytest

from app.application.services.notification_helper import NotificationHelper
from app.application.services.waiting_room_service import WaitingRoomService, waiting_queue
from app.application.ports.appointments_repo import (
    AppointmentDto,
    AppointmentFilter,
    AppointmentStatus,
    AppointmentsRepository,
    OrderBy,
)
from app.application.ports.notifier import NotificationKind, NotificationSender
from app.exceptions import NotFoundError, PermissionDeniedError

NOW = datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)


class FakeApptRepo(AppointmentsRepository):
    def __init__(self, *appts: AppointmentDto):
        self.appts: Dict[str, AppointmentDto] = {a.id: a for a in appts}

    async def get(self, appointment_id: str) -> Optional[AppointmentDto]:
        return self.appts.get(appointment_id)

    async def query(self, filters: AppointmentFilter, order_by: OrderBy = OrderBy.SCHEDULED_TIME) -> List[AppointmentDto]:
        return [a for a in self.appts.values() if filters.matches(a)]

    async def update(
        self,
        appointment_id: str,
        changes: Dict[str, Any],
        expected_statuses: Optional[FrozenSet[AppointmentStatus]] = None,
        require_not_waiting: bool = False,
    ) -> Optional[AppointmentDto]:
        appt = self.appts.get(appointment_id)
        if appt is None:
            return None
        if require_not_waiting and appt.is_waiting:
            return None
        self.appts[appointment_id] = appt.copy_with(**changes)
        return self.appts[appointment_id]


class FakeSender(NotificationSender):
    def __init__(self):
        self.sent = []

    async def notify(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        self.sent.append((user_id, kind))


class StepClock:
    """Returns a later instant on every call."""

    def __init__(self, start: datetime = NOW, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def now(self) -> datetime:
        self.current = self.current + self.step
        return self.current


def _appt(id="a1", patient_id="p1", status=AppointmentStatus.SCHEDULED, **kw):
    return AppointmentDto(id=id, patient_id=patient_id, practitioner_id="D", scheduled_time=NOW + timedelta(hours=1), status=status, **kw)


def _service(*appts, clock=None):
    repo = FakeApptRepo(*appts)
    sender = FakeSender()
    svc = WaitingRoomService(repo=repo, notifications=NotificationHelper(sender=sender), clock=clock or StepClock())
    return svc, repo, sender


@pytest.mark.asyncio
async def test_join_is_idempotent_while_waiting():
    svc, repo, sender = _service(_appt())
    first = await svc.join("a1", actor_id="p1")
    second = await svc.join("a1", actor_id="p1")
    assert first.waiting_room_joined_at is not None
    assert second.waiting_room_joined_at == first.waiting_room_joined_at
    assert repo.appts["a1"].waiting_room_joined_at == first.waiting_room_joined_at
    # Practitioner hears about the arrival once
    assert sender.sent == [("D", NotificationKind.PATIENT_WAITING)]


@pytest.mark.asyncio
async def test_leave_then_rejoin_starts_a_fresh_wait():
    svc, repo, _ = _service(_appt())
    joined = await svc.join("a1")
    left = await svc.leave("a1")
    assert left.waiting_room_left_at >= joined.waiting_room_joined_at

    rejoined = await svc.join("a1")
    assert rejoined.waiting_room_left_at is None
    assert rejoined.waiting_room_joined_at > left.waiting_room_left_at
    assert rejoined.is_waiting


@pytest.mark.asyncio
async def test_rejoin_with_stalled_clock_is_still_after_leave():
    clock = StepClock(step=timedelta(0))
    svc, _, _ = _service(_appt(), clock=clock)
    await svc.join("a1")
    left = await svc.leave("a1")
    rejoined = await svc.join("a1")
    assert rejoined.waiting_room_joined_at > left.waiting_room_left_at


@pytest.mark.asyncio
async def test_leave_succeeds_in_any_status():
    svc, _, _ = _service(
        _appt(id="done", status=AppointmentStatus.COMPLETED),
        _appt(id="gone", status=AppointmentStatus.CANCELLED),
    )
    assert (await svc.leave("done")).waiting_room_left_at is not None
    assert (await svc.leave("gone")).waiting_room_left_at is not None


@pytest.mark.asyncio
async def test_only_patient_can_join_or_leave():
    svc, _, _ = _service(_appt())
    with pytest.raises(PermissionDeniedError):
        await svc.join("a1", actor_id="D")
    with pytest.raises(PermissionDeniedError):
        await svc.leave("a1", actor_id="stranger")


@pytest.mark.asyncio
async def test_missing_appointment_is_not_found():
    svc, _, _ = _service()
    with pytest.raises(NotFoundError):
        await svc.join("nope")
    with pytest.raises(NotFoundError):
        await svc.leave("nope")


@pytest.mark.asyncio
async def test_list_waiting_sorted_by_arrival_and_excludes_left_and_terminal():
    svc, _, _ = _service(
        _appt(id="late", patient_id="p1"),
        _appt(id="early", patient_id="p2"),
        _appt(id="left", patient_id="p3"),
        _appt(id="never", patient_id="p4"),
        _appt(id="finished", patient_id="p5", status=AppointmentStatus.COMPLETED,
              waiting_room_joined_at=NOW),
    )
    await svc.join("early")
    await svc.join("left")
    await svc.join("late")
    await svc.leave("left")

    waiting = await svc.list_waiting("D")
    assert [a.id for a in waiting] == ["early", "late"]
    assert await svc.list_waiting("other-practitioner") == []


def test_waiting_queue_orders_by_join_time():
    a = _appt(id="a", waiting_room_joined_at=NOW + timedelta(minutes=2))
    b = _appt(id="b", waiting_room_joined_at=NOW + timedelta(minutes=1))
    c = _appt(id="c", waiting_room_joined_at=NOW, waiting_room_left_at=NOW + timedelta(minutes=3))
    assert [x.id for x in waiting_queue([a, b, c])] == ["b", "a"]


@pytest.mark.asyncio
async def test_join_racing_another_join_keeps_first_arrival():
    svc, repo, sender = _service(_appt())
    stale = repo.appts["a1"]
    first = await svc.join("a1")

    real_get = repo.get
    calls = []

    async def get_stale_once(appointment_id):
        # The second join read the appointment before the first one wrote
        if not calls:
            calls.append(appointment_id)
            return stale
        return await real_get(appointment_id)

    repo.get = get_stale_once
    second = await svc.join("a1")

    assert second.waiting_room_joined_at == first.waiting_room_joined_at
    assert repo.appts["a1"].waiting_room_joined_at == first.waiting_room_joined_at
    assert sender.sent == [("D", NotificationKind.PATIENT_WAITING)]
