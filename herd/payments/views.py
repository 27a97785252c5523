import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from herd.app_setup.dependencies import get_gateway, get_ledger, get_outbox, get_settings
from herd.bookings.repository import BookingLedger
from herd.config import Settings
from herd.notifications.outbox import NotificationOutbox
from herd.utils.rate_limit import optional_rate_limit
from herd.utils.security import require_user

from .connect import start_connect_onboarding
from .service import confirm_booking, create_checkout_session
from .stripe_client import StripeGateway
from .webhook import handle_webhook_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["Payments API"])


class CheckoutRequest(BaseModel):
    class_id: Optional[str] = None
    # validé par le service (message métier plutôt qu'un 422 générique)
    qty: Any = 1
    student_names: List[Any] = Field(default_factory=list)
    user_id: Optional[str] = None


class ConfirmRequest(BaseModel):
    sessionId: Optional[str] = None


# module herd.payments.views
@router.post("/checkout-session", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def checkout_session(
    body: CheckoutRequest,
    user: Dict[str, Any] = Depends(require_user),
    ledger: BookingLedger = Depends(get_ledger),
    gateway: StripeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    """
    Crée une session Checkout Stripe pour une réservation de places.
    - Entrée JSON: { "class_id": "...", "qty": 2, "student_names": ["A", "B"] }
    - Sécurité: require_user + rate limit (10 req / 60s)
    - Sortie: { "url": "...", "id": "cs_..." }
    """
    return create_checkout_session(
        user_id=user["id"],
        class_id=body.class_id,
        qty=body.qty,
        student_names=body.student_names,
        requested_user_id=body.user_id,
        ledger=ledger,
        gateway=gateway,
        settings=settings,
    )


@router.post("/confirm")
def confirm(
    body: ConfirmRequest,
    user: Dict[str, Any] = Depends(require_user),
    ledger: BookingLedger = Depends(get_ledger),
    gateway: StripeGateway = Depends(get_gateway),
):
    return confirm_booking(body.sessionId, user_id=user["id"], ledger=ledger, gateway=gateway)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    ledger: BookingLedger = Depends(get_ledger),
    gateway: StripeGateway = Depends(get_gateway),
    outbox: NotificationOutbox = Depends(get_outbox),
    settings: Settings = Depends(get_settings),
):
    """
    Webhook Stripe: corps brut + en-tête Stripe-Signature.
    La signature est vérifiée avant tout traitement (400 sinon).
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return await run_in_threadpool(
        handle_webhook_event,
        payload,
        sig_header,
        ledger=ledger,
        gateway=gateway,
        outbox=outbox,
        settings=settings,
    )


@router.post("/connect")
def connect_onboarding(
    user: Dict[str, Any] = Depends(require_user),
    ledger: BookingLedger = Depends(get_ledger),
    gateway: StripeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    return start_connect_onboarding(user, ledger=ledger, gateway=gateway, settings=settings)
