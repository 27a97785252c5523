"""
Points d'entrée des tâches planifiées (cron), protégés par require_internal.
Réponses: compteurs structurés pour la supervision, jamais destinés aux utilisateurs.
"""
from typing import Optional

from fastapi import APIRouter, Depends

from herd.app_setup.dependencies import get_gateway, get_ledger, get_outbox, get_settings
from herd.bookings.repository import BookingLedger
from herd.config import Settings
from herd.notifications.outbox import NotificationOutbox
from herd.payments.stripe_client import StripeGateway
from herd.utils.security import require_internal

from .expiry import expire_booking_holds, expire_pending_bookings
from .payouts import release_held_payments
from .reconciliation import reconcile_payments

router = APIRouter(prefix="/api/v1/internal", tags=["Internal jobs"])


@router.get("/expire-booking-holds")
def expire_booking_holds_probe():
    return {"ok": True, "service": "expire-booking-holds"}


@router.post("/expire-booking-holds", dependencies=[Depends(require_internal)])
def expire_booking_holds_job(ledger: BookingLedger = Depends(get_ledger)):
    return expire_booking_holds(ledger=ledger)


@router.post("/expire-pending-bookings", dependencies=[Depends(require_internal)])
def expire_pending_bookings_job(
    limit: Optional[str] = None,
    ledger: BookingLedger = Depends(get_ledger),
    gateway: StripeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    return expire_pending_bookings(ledger=ledger, gateway=gateway, settings=settings, limit=limit)


@router.post("/reconcile-payments", dependencies=[Depends(require_internal)])
def reconcile_payments_job(
    ledger: BookingLedger = Depends(get_ledger),
    gateway: StripeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    return reconcile_payments(ledger=ledger, gateway=gateway, settings=settings)


@router.post("/release-held-payments", dependencies=[Depends(require_internal)])
def release_held_payments_job(
    ledger: BookingLedger = Depends(get_ledger),
    gateway: StripeGateway = Depends(get_gateway),
    outbox: NotificationOutbox = Depends(get_outbox),
    settings: Settings = Depends(get_settings),
):
    return release_held_payments(ledger=ledger, gateway=gateway, outbox=outbox, settings=settings)
