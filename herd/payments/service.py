"""
Cas d'usage 'payments': ouverture d'une session Checkout et consultation de son état.
Orchestre le registre (classes, disponibilités, retenues de places), la tarification et Stripe.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

from herd.bookings.repository import BookingLedger, LedgerError
from herd.config import Settings

from . import metadata as meta
from .pricing import normalize_to_cents, per_seat_cents
from .stripe_client import GatewayError, StripeGateway

logger = logging.getLogger(__name__)

MAX_QTY = 50


def parse_qty(value: Any) -> Optional[int]:
    """Quantité entière dans [1, MAX_QTY]; None si invalide."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    try:
        qty = int(value)
    except (TypeError, ValueError):
        return None
    if qty < 1 or qty > MAX_QTY:
        return None
    return qty


def remaining_seats_message(available: int) -> str:
    if available <= 0:
        return "This class is fully booked"
    if available == 1:
        return "Only 1 seat remains for this class"
    return f"Only {available} seats remain for this class"


def create_checkout_session(
    *,
    user_id: str,
    class_id: Optional[str],
    qty: Any = 1,
    student_names: Optional[List[Any]] = None,
    requested_user_id: Optional[str] = None,
    ledger: BookingLedger,
    gateway: StripeGateway,
    settings: Settings,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Ouvre une session Checkout pour `qty` places d'une classe.
    Étapes:
      1) contrôles (identité, quantité, classe, places disponibles via available_spots)
      2) prix par place commission incluse, total = prix x qty
      3) retenue de places (booking_holds, TTL configuré)
      4) session Stripe: capture automatique si la classe s'auto-approuve, sinon autorisation seule;
         métadonnées posées sur la session ET sur le PaymentIntent
      5) id de session rattaché à la retenue avant de renvoyer l'URL
    """
    if requested_user_id and str(requested_user_id) != str(user_id):
        raise HTTPException(status_code=403, detail="Forbidden")
    if not class_id:
        raise HTTPException(status_code=400, detail="Missing class_id")
    seats = parse_qty(qty)
    if seats is None:
        raise HTTPException(status_code=400, detail="Invalid quantity selected")

    cls = ledger.get_class(class_id)
    if not cls:
        raise HTTPException(status_code=404, detail="Class not found")

    try:
        available = ledger.available_spots(class_id)
    except LedgerError:
        raise HTTPException(status_code=400, detail="Unable to verify availability")
    if available < seats:
        raise HTTPException(status_code=400, detail=remaining_seats_message(available))

    unit = per_seat_cents(normalize_to_cents(cls.get("price_per_person_cents")), settings.fee_rate)
    total = unit * seats
    if total <= 0:
        raise HTTPException(status_code=400, detail="Invalid class price")

    names = meta.clean_student_names(student_names or [], seats)
    now = now or datetime.now(timezone.utc)
    hold = ledger.create_hold(
        class_id=class_id,
        guest_id=user_id,
        quantity=seats,
        expires_at=now + timedelta(minutes=settings.hold_ttl_minutes),
    )
    hold_id = str(hold.get("id"))

    metadata = meta.make_metadata(
        class_id=class_id,
        user_id=user_id,
        qty=seats,
        student_names=names,
        hold_id=hold_id,
    )
    params = {
        "mode": "payment",
        "line_items": [
            {
                "price_data": {
                    "currency": settings.currency,
                    "unit_amount": unit,
                    "product_data": {"name": f"Class: {cls.get('title') or class_id}"},
                },
                "quantity": seats,
            }
        ],
        "success_url": settings.checkout_success_url,
        "cancel_url": settings.checkout_cancel_url,
        "client_reference_id": user_id,
        "metadata": metadata,
        "payment_intent_data": {
            "capture_method": "automatic" if cls.get("auto_approve") else "manual",
            "metadata": metadata,
            "transfer_group": metadata["transfer_group"],
        },
    }

    try:
        session = gateway.create_checkout_session(params)
    except GatewayError as e:
        ledger.cancel_hold(hold_id)
        raise HTTPException(status_code=500, detail=e.message or "Unable to create checkout session")

    session_id = session.get("id")
    try:
        ledger.attach_hold_session(hold_id, session_id)
    except LedgerError:
        ledger.cancel_hold(hold_id)
        raise HTTPException(status_code=500, detail="Unable to record checkout session")

    logger.info(
        "payments.checkout created session=%s class_id=%s qty=%s total=%s hold=%s",
        session_id,
        class_id,
        seats,
        total,
        hold_id,
    )
    return {"url": session.get("url"), "id": session_id}


def _customer_email(session: Dict[str, Any]) -> Optional[str]:
    details = session.get("customer_details") or {}
    if details.get("email"):
        return details["email"]
    customer = session.get("customer")
    if isinstance(customer, dict):
        return customer.get("email")
    return session.get("customer_email")


def confirm_booking(
    session_id: Optional[str],
    *,
    user_id: str,
    ledger: BookingLedger,
    gateway: StripeGateway,
) -> Dict[str, Any]:
    """
    Lecture de l'état faisant foi après la redirection Checkout (aucune transition du registre).
    - 403 si la réservation, les métadonnées de la session ou du PaymentIntent désignent un autre client
    - booking: ligne courante ou None (le webhook ne l'a pas encore écrite)
    """
    if not session_id:
        raise HTTPException(status_code=400, detail="Missing sessionId")

    try:
        session = gateway.retrieve_checkout_session(session_id, expand=["payment_intent", "customer"])
    except GatewayError as e:
        if e.code == "resource_missing":
            raise HTTPException(status_code=404, detail="Checkout session not found")
        raise HTTPException(status_code=500, detail=e.message or "Unable to retrieve checkout session")

    booking = ledger.get_booking_by_session(session_id)
    owners = {
        str(v)
        for v in (
            (booking or {}).get("user_id"),
            (session.get("metadata") or {}).get("user_id"),
            meta.intent_user_id(session),
        )
        if v
    }
    if not owners or owners != {str(user_id)}:
        logger.warning("payments.confirm forbidden session=%s user_id=%s", session_id, user_id)
        raise HTTPException(status_code=403, detail="Forbidden")

    return {
        "ok": True,
        "session": {
            "id": session.get("id"),
            "status": session.get("status"),
            "payment_status": session.get("payment_status"),
            "customer_email": _customer_email(session),
        },
        "booking": booking,
    }
