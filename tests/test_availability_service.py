from datetime import datetime, time, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from app.application.services.availability_service import AvailabilityService
from app.application.ports.appointments_repo import (
    AppointmentDto,
    AppointmentFilter,
    AppointmentStatus,
    AppointmentsRepository,
    OrderBy,
)
from app.application.ports.working_hours_repo import DaySchedule, WorkingHoursDto, WorkingHoursRepository

MONDAY_10 = datetime(2030, 1, 7, 10, 0, tzinfo=timezone.utc)


class FakeApptRepo(AppointmentsRepository):
    def __init__(self, appts: List[AppointmentDto]):
        self.appts = appts

    async def query(self, filters: AppointmentFilter, order_by: OrderBy = OrderBy.SCHEDULED_TIME) -> List[AppointmentDto]:
        return [a for a in self.appts if filters.matches(a)]


class FakeHoursRepo(WorkingHoursRepository):
    def __init__(self):
        self.hours: Dict[str, WorkingHoursDto] = {}

    async def get(self, practitioner_id: str) -> Optional[WorkingHoursDto]:
        return self.hours.get(practitioner_id)

    async def save(self, working_hours: WorkingHoursDto) -> None:
        self.hours[working_hours.practitioner_id] = working_hours


def _booked(when, status=AppointmentStatus.SCHEDULED, practitioner_id="D"):
    return AppointmentDto(id=f"a-{when.isoformat()}", patient_id="p1", practitioner_id=practitioner_id, scheduled_time=when, status=status)


@pytest.mark.asyncio
async def test_conflict_window_rejects_close_slots_and_accepts_distant_ones():
    svc = AvailabilityService(repo=FakeApptRepo([_booked(MONDAY_10)]), working_hours_repo=FakeHoursRepo())
    assert await svc.is_available("D", MONDAY_10 + timedelta(minutes=20)) is False
    assert await svc.is_available("D", MONDAY_10 + timedelta(minutes=31)) is True


@pytest.mark.asyncio
async def test_exactly_one_window_apart_is_available():
    svc = AvailabilityService(repo=FakeApptRepo([_booked(MONDAY_10)]), working_hours_repo=FakeHoursRepo())
    assert await svc.is_available("D", MONDAY_10 + timedelta(minutes=30))
    assert await svc.is_available("D", MONDAY_10 - timedelta(minutes=30))


@pytest.mark.asyncio
async def test_terminal_and_other_practitioners_appointments_do_not_block():
    repo = FakeApptRepo([
        _booked(MONDAY_10, status=AppointmentStatus.CANCELLED),
        _booked(MONDAY_10, status=AppointmentStatus.COMPLETED),
        _booked(MONDAY_10, practitioner_id="E"),
    ])
    svc = AvailabilityService(repo=repo, working_hours_repo=FakeHoursRepo())
    assert await svc.is_available("D", MONDAY_10)


@pytest.mark.asyncio
async def test_in_progress_appointment_blocks():
    repo = FakeApptRepo([_booked(MONDAY_10, status=AppointmentStatus.IN_PROGRESS)])
    svc = AvailabilityService(repo=repo, working_hours_repo=FakeHoursRepo())
    result = await svc.check("D", MONDAY_10 + timedelta(minutes=5))
    assert not result.available
    assert result.reason


@pytest.mark.asyncio
async def test_working_hours_checked_after_conflicts():
    hours = FakeHoursRepo()
    await hours.save(WorkingHoursDto(
        practitioner_id="D",
        days={"Monday": DaySchedule(enabled=True, start=time(9, 0), end=time(12, 0))},
    ))
    svc = AvailabilityService(repo=FakeApptRepo([]), working_hours_repo=hours)

    assert await svc.is_available("D", MONDAY_10.replace(hour=9))
    assert await svc.is_available("D", MONDAY_10.replace(hour=12))
    evening = await svc.check("D", MONDAY_10.replace(hour=18))
    assert not evening.available
    assert evening.reason == "Practitioner is available 09:00 - 12:00 on Monday"
    tuesday = await svc.check("D", MONDAY_10 + timedelta(days=1))
    assert tuesday.reason == "Practitioner is not available on Tuesday"


@pytest.mark.asyncio
async def test_custom_window():
    svc = AvailabilityService(repo=FakeApptRepo([_booked(MONDAY_10)]), working_hours_repo=FakeHoursRepo(), conflict_window_minutes=60)
    assert not await svc.is_available("D", MONDAY_10 + timedelta(minutes=45))
