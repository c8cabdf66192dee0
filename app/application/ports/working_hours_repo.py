from dataclasses import dataclass, field
from datetime import time
from typing import Dict, Optional, Protocol


WEEK_DAYS = [
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
]


@dataclass
class DaySchedule:
    enabled: bool
    start: time
    end: time


@dataclass
class WorkingHoursDto:
    practitioner_id: str
    # Keyed by day name as in WEEK_DAYS; a missing day is a disabled day
    days: Dict[str, DaySchedule] = field(default_factory=dict)
    timezone: str = "UTC"

    @property
    def is_configured(self) -> bool:
        return bool(self.days)


class WorkingHoursRepository(Protocol):
    async def get(self, practitioner_id: str) -> Optional[WorkingHoursDto]:
        ...

    async def save(self, working_hours: WorkingHoursDto) -> None:
        ...
