import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from herd.app_setup.dependencies import get_gateway, get_ledger, get_outbox, get_settings
from herd.config import Settings
from herd.notifications.outbox import NotificationOutbox
from herd.payments.stripe_client import StripeGateway
from herd.utils.security import require_user

from .repository import BookingLedger
from .service import approve_booking, deny_booking

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/bookings", tags=["Bookings API"])


class ApproveRequest(BaseModel):
    booking_id: Optional[str] = None


class DenyRequest(BaseModel):
    booking_id: Optional[str] = None
    message: Optional[str] = None


@router.post("/approve")
def approve(
    body: ApproveRequest,
    user: Dict[str, Any] = Depends(require_user),
    ledger: BookingLedger = Depends(get_ledger),
    gateway: StripeGateway = Depends(get_gateway),
    outbox: NotificationOutbox = Depends(get_outbox),
    settings: Settings = Depends(get_settings),
):
    """
    Approbation par l'hôte (capture des fonds).
    - 200 {ok} ou {ok, already_captured}
    - 400 non approuvable, 403 pas l'hôte, 409 capture en cours, 500 échec capture/écriture
    """
    return approve_booking(
        body.booking_id,
        user_id=user["id"],
        ledger=ledger,
        gateway=gateway,
        outbox=outbox,
        settings=settings,
    )


@router.post("/deny")
def deny(
    body: DenyRequest,
    user: Dict[str, Any] = Depends(require_user),
    ledger: BookingLedger = Depends(get_ledger),
    gateway: StripeGateway = Depends(get_gateway),
):
    return deny_booking(
        body.booking_id,
        user_id=user["id"],
        message=body.message,
        ledger=ledger,
        gateway=gateway,
    )
