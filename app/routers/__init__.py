# Routers package
from . import appointments_router
from . import practitioners_router

__all__ = [
    "appointments_router",
    "practitioners_router",
]
