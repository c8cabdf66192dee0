from dataclasses import dataclass
from datetime import datetime
import logging

from ..policies import (
    DEFAULT_CONFLICT_WINDOW_MINUTES,
    NOT_AVAILABLE_MESSAGE,
    AvailabilityResult,
    check_working_hours,
    ensure_utc,
    find_conflict,
)
from ..ports.appointments_repo import ACTIVE_STATUSES, AppointmentFilter, AppointmentsRepository
from ..ports.working_hours_repo import WorkingHoursRepository

logger = logging.getLogger(__name__)


@dataclass
class AvailabilityService:
    repo: AppointmentsRepository
    working_hours_repo: WorkingHoursRepository
    conflict_window_minutes: int = DEFAULT_CONFLICT_WINDOW_MINUTES

    async def check(self, practitioner_id: str, candidate_time: datetime) -> AvailabilityResult:
        candidate = ensure_utc(candidate_time)

        active = await self.repo.query(
            AppointmentFilter(practitioner_id=practitioner_id, statuses=ACTIVE_STATUSES)
        )
        clash = find_conflict(active, candidate, self.conflict_window_minutes)
        if clash is not None:
            logger.info(f"Slot {candidate.isoformat()} for practitioner {practitioner_id} clashes with appointment {clash.id}")
            return AvailabilityResult(False, NOT_AVAILABLE_MESSAGE)

        hours = await self.working_hours_repo.get(practitioner_id)
        return check_working_hours(hours, candidate)

    async def is_available(self, practitioner_id: str, candidate_time: datetime) -> bool:
        result = await self.check(practitioner_id, candidate_time)
        return result.available
