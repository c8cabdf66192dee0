# Models package (re-export feature modules for stable imports)
from .health.appointment import Appointment, PractitionerBookingLock
from .health.schedule import PractitionerSchedule
from .health.notification import Notification

__all__ = [
    "Appointment",
    "PractitionerBookingLock",
    "PractitionerSchedule",
    "Notification",
]
