# app/container.py
from dataclasses import dataclass

from fastapi.requests import HTTPConnection
from sqlalchemy.engine import Engine

from .config import Settings
from .application.ports.appointments_repo import AppointmentsRepository
from .application.ports.working_hours_repo import WorkingHoursRepository
from .application.services.appointments_service import AppointmentsService
from .application.services.availability_service import AvailabilityService
from .application.services.notification_helper import NotificationHelper
from .application.services.session_gate_service import SessionGateService
from .application.services.waiting_room_service import WaitingRoomService
from .infrastructure.clock.utc_clock import UtcClock
from .infrastructure.notifications.sql_notification_sender import SqlNotificationSender
from .infrastructure.persistence.sqlalchemy.repositories.appointments_repository_sql import SqlAppointmentsRepository
from .infrastructure.persistence.sqlalchemy.repositories.working_hours_repository_sql import SqlWorkingHoursRepository
from .infrastructure.realtime.change_feed import ChangeFeed


@dataclass
class Container:
    """Service handles wired once per application and passed explicitly."""

    appointments_repo: AppointmentsRepository
    working_hours_repo: WorkingHoursRepository
    availability: AvailabilityService
    appointments: AppointmentsService
    waiting_room: WaitingRoomService
    session_gate: SessionGateService


def build_container(engine: Engine, settings: Settings) -> Container:
    feed = ChangeFeed(queue_size=settings.SUBSCRIPTION_QUEUE_SIZE)
    repo = SqlAppointmentsRepository(engine, feed)
    hours_repo = SqlWorkingHoursRepository(engine)
    notifications = NotificationHelper(sender=SqlNotificationSender(engine))
    clock = UtcClock()

    availability = AvailabilityService(
        repo=repo,
        working_hours_repo=hours_repo,
        conflict_window_minutes=settings.CONFLICT_WINDOW_MINUTES,
    )
    return Container(
        appointments_repo=repo,
        working_hours_repo=hours_repo,
        availability=availability,
        appointments=AppointmentsService(repo=repo, availability=availability, notifications=notifications, clock=clock),
        waiting_room=WaitingRoomService(repo=repo, notifications=notifications, clock=clock),
        session_gate=SessionGateService(
            repo=repo,
            poll_interval_ms=settings.SESSION_POLL_INTERVAL_MS,
            max_attempts=settings.SESSION_POLL_MAX_ATTEMPTS,
        ),
    )


def get_container(conn: HTTPConnection) -> Container:
    return conn.app.state.container
