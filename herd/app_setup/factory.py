"""
Factory d’application pour les entrypoints (ex: herd.asgi).
Ordonne les étapes d’initialisation de manière lisible et testable.
"""
from typing import Optional

from fastapi import FastAPI

from herd.config import Settings, load_settings

from .exceptions import register_exception_handlers
from .lifespan import lifespan
from .middlewares import register_basic_middlewares, register_security_middleware
from .routers import register_routers


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Construit l’app FastAPI avec le lifespan et enregistre:
      - middlewares (CORS, TrustedHost, en-têtes de sécurité)
      - gestionnaires d’exceptions
      - routers (payments, bookings, internal, health)
    settings fourni (tests): réutilisé tel quel par le lifespan.
    Sinon les middlewares lisent l'env sans contrôle, le lifespan validera strictement.
    """
    app = FastAPI(title="HERD payments", lifespan=lifespan)
    if settings is not None:
        app.state.settings = settings
    register_basic_middlewares(app, settings or load_settings(strict=False))
    register_security_middleware(app)
    register_exception_handlers(app)
    register_routers(app)
    return app
