"""
Fournisseurs de dépendances FastAPI.
Les ressources partagées (settings, registre Stripe, registre des réservations, outbox)
sont construites une fois par le lifespan et rangées dans app.state; les routes les
obtiennent via Depends(...), que les tests remplacent par app.dependency_overrides.
"""
from fastapi import Request

from herd.bookings.repository import BookingLedger
from herd.config import Settings
from herd.notifications.outbox import NotificationOutbox
from herd.payments.stripe_client import StripeGateway


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise RuntimeError(f"app.state.{name} non initialisé (lifespan non exécuté ?)")
    return value


def get_settings(request: Request) -> Settings:
    return _state(request, "settings")


def get_ledger(request: Request) -> BookingLedger:
    return _state(request, "ledger")


def get_outbox(request: Request) -> NotificationOutbox:
    return _state(request, "outbox")


def get_gateway(request: Request) -> StripeGateway:
    settings = get_settings(request)
    return _state(request, "gateways").get(settings.stripe_secret_key)


def get_auth_client(request: Request):
    return _state(request, "auth_supabase")
