from datetime import datetime, timezone

from ...application.ports.clock import Clock


class UtcClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)
