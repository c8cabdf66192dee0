# Schemas package (re-export feature modules for stable imports)
from .appointments.appointment import *
from .practitioners.working_hours import *
