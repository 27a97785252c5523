"""
Registre central des routers.
- API v1: payments, bookings, internal (tâches planifiées)
- Health
"""
from fastapi import FastAPI

from herd.bookings import views as bookings_views
from herd.health.router import router as health_router
from herd.payments import views as payments_views
from herd.sweepers import views as sweepers_views


def register_routers(app: FastAPI) -> None:
    app.include_router(payments_views.router)
    app.include_router(bookings_views.router)
    app.include_router(sweepers_views.router)
    app.include_router(health_router)
