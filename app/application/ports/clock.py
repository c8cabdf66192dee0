from datetime import datetime
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Current wall-clock instant as a timezone-aware UTC datetime."""
        ...
