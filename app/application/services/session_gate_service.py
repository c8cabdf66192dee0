from dataclasses import dataclass
from typing import AsyncIterator, Optional
import asyncio
import logging

from ...exceptions import InvalidStateError, NotFoundError, TransientIOError
from ..policies import can_establish_session
from ..ports.appointments_repo import AppointmentDto, AppointmentsRepository

logger = logging.getLogger(__name__)

NOT_IN_PROGRESS_MESSAGE = "Appointment is not in progress. Please wait for the practitioner to start the appointment."


@dataclass
class SessionGateService:
    """Decides whether a live video/chat session may be set up.

    The answer is re-read from the store on every call; a practitioner can end
    the appointment at any moment, which revokes permission immediately.
    """

    repo: AppointmentsRepository
    poll_interval_ms: int = 500
    max_attempts: int = 20

    async def check(self, appointment_id: str) -> bool:
        appt = await self.repo.get(appointment_id)
        if not appt:
            raise NotFoundError()
        return can_establish_session(appt)

    async def wait_for_session(self, appointment_id: str) -> AppointmentDto:
        """Poll until the appointment is in progress, up to ``max_attempts`` reads.

        Read failures while polling are logged and retried. Raises
        InvalidStateError when the attempts run out.
        """
        appt: Optional[AppointmentDto] = None
        last_error: Optional[TransientIOError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                appt = await self.repo.get(appointment_id)
            except TransientIOError as e:
                last_error = e
                logger.warning(f"Error fetching appointment {appointment_id} (attempt {attempt}): {e.detail}")
            else:
                last_error = None
                if appt is not None and can_establish_session(appt):
                    return appt
            if attempt < self.max_attempts:
                await asyncio.sleep(self.poll_interval_ms / 1000)

        if appt is None:
            if last_error is not None:
                raise last_error
            raise NotFoundError()
        logger.info(f"Gave up waiting for appointment {appointment_id} to start; status is {appt.status.value}")
        raise InvalidStateError(NOT_IN_PROGRESS_MESSAGE)

    async def watch(self, appointment_id: str) -> AsyncIterator[bool]:
        async for appt in self.repo.subscribe(appointment_id):
            yield appt is not None and can_establish_session(appt)
