import asyncio
import json
import logging
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from .....db.models import PractitionerSchedule
from .....db.models.health.appointment import utc_now
from .....exceptions import TransientIOError
from .....application.policies import format_wall_clock, parse_wall_clock
from .....application.ports.working_hours_repo import (
    DaySchedule,
    WorkingHoursDto,
    WorkingHoursRepository,
)

logger = logging.getLogger(__name__)


class SqlWorkingHoursRepository(WorkingHoursRepository):
    def __init__(self, engine: Engine):
        self.engine = engine

    def _row_to_dto(self, row: PractitionerSchedule) -> WorkingHoursDto:
        raw = json.loads(row.working_hours or "{}")
        days = {
            day: DaySchedule(
                enabled=bool(value.get("enabled")),
                start=parse_wall_clock(value["start"]),
                end=parse_wall_clock(value["end"]),
            )
            for day, value in raw.items()
        }
        return WorkingHoursDto(practitioner_id=row.practitioner_id, days=days, timezone=row.timezone or "UTC")

    def _get_sync(self, practitioner_id: str) -> Optional[WorkingHoursDto]:
        with Session(self.engine) as session:
            row = session.get(PractitionerSchedule, practitioner_id)
            return self._row_to_dto(row) if row else None

    def _save_sync(self, hours: WorkingHoursDto) -> None:
        payload = json.dumps({
            day: {
                "enabled": schedule.enabled,
                "start": format_wall_clock(schedule.start),
                "end": format_wall_clock(schedule.end),
            }
            for day, schedule in hours.days.items()
        })
        with Session(self.engine) as session:
            row = session.get(PractitionerSchedule, hours.practitioner_id)
            if row is None:
                row = PractitionerSchedule(practitioner_id=hours.practitioner_id)
            row.working_hours = payload
            row.timezone = hours.timezone
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    async def get(self, practitioner_id: str) -> Optional[WorkingHoursDto]:
        try:
            return await asyncio.to_thread(self._get_sync, practitioner_id)
        except SQLAlchemyError as e:
            logger.error(f"Error getting working hours for {practitioner_id}: {e}")
            raise TransientIOError() from e

    async def save(self, working_hours: WorkingHoursDto) -> None:
        try:
            await asyncio.to_thread(self._save_sync, working_hours)
        except SQLAlchemyError as e:
            logger.error(f"Error saving working hours for {working_hours.practitioner_id}: {e}")
            raise TransientIOError() from e
