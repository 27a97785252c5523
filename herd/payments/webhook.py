"""
Webhook Stripe: écriture asynchrone des réservations et synchro des comptes connectés.

- checkout.session.completed: consomme la retenue de places puis insère la réservation
  (ou rembourse si la retenue a expiré entre-temps)
- account.updated: profiles.stripe_connected = details_submitted
Chaque événement n'est traité qu'une fois (webhook_logs.stripe_id unique).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import HTTPException

from herd.bookings.repository import BookingLedger, LedgerError
from herd.bookings.states import BookingStatus, CaptureStatus, HoldStatus, PaymentStatus
from herd.config import Settings
from herd.notifications.outbox import NotificationKind, NotificationOutbox

from .metadata import extract_metadata_from_session
from .pricing import estimate_gateway_fee, fee_split
from .stripe_client import UNCAPTURED_INTENT_STATUSES, GatewayError, StripeGateway, expandable_id

logger = logging.getLogger(__name__)

HOLD_EXPIRED_MESSAGE = "Seat hold expired before payment completed."


def _refund_invalid_hold(session_id: str, pi_id: Optional[str], gateway: StripeGateway) -> Tuple[PaymentStatus, Optional[str]]:
    """Paiement reçu sans retenue valide: annulation de l'autorisation ou remboursement idempotent."""
    if not pi_id:
        return PaymentStatus.FAILED, None
    try:
        pi = gateway.retrieve_payment_intent(pi_id)
        if pi.get("status") in UNCAPTURED_INTENT_STATUSES:
            gateway.cancel_payment_intent(pi_id)
            return PaymentStatus.FAILED, None
        existing = gateway.list_refunds(pi_id, limit=1)
        if existing:
            return PaymentStatus.REFUNDED, existing[0].get("id")
        refund = gateway.create_refund(pi_id, idempotency_key=f"hold_invalid_{session_id}")
        return PaymentStatus.REFUNDED, refund.get("id")
    except GatewayError:
        logger.exception("payments.webhook refund for invalid hold failed session=%s pi=%s", session_id, pi_id)
        return PaymentStatus.FAILED, None


def handle_checkout_completed(
    session: Dict[str, Any],
    *,
    ledger: BookingLedger,
    gateway: StripeGateway,
    outbox: NotificationOutbox,
    settings: Settings,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    session_id = session.get("id")
    if not session_id:
        return {"ignored": "missing_session_id"}
    existing = ledger.get_booking_by_session(session_id)
    if existing:
        return {"booking_id": existing.get("id"), "duplicate": True}

    info = extract_metadata_from_session(session)
    if not info["class_id"] or not info["user_id"]:
        logger.warning("payments.webhook session without booking metadata session=%s", session_id)
        return {"ignored": "missing_metadata"}

    now = now or datetime.now(timezone.utc)
    pi_id = expandable_id(session.get("payment_intent"))
    total = int(session.get("amount_total") or 0)
    cls = ledger.get_class(info["class_id"])

    hold = ledger.consume_hold(session_id, now)
    if hold is None:
        # reprise après un échec d'insertion: la retenue a déjà été consommée par cette session
        previous = ledger.get_hold_by_session(session_id)
        if previous and previous.get("status") == HoldStatus.CONSUMED.value:
            hold = previous

    row: Dict[str, Any] = {
        "user_id": info["user_id"],
        "class_id": info["class_id"],
        "qty": info["qty"],
        "student_names": info["student_names"],
        "total_cents": total,
        "stripe_checkout_session_id": session_id,
        "stripe_payment_intent_id": pi_id,
    }

    if hold is None or cls is None:
        outcome, refund_id = _refund_invalid_hold(session_id, pi_id, gateway)
        row.update({
            "status": BookingStatus.DENIED.value,
            "payment_status": outcome.value,
            "capture_status": CaptureStatus.NONE.value,
            "denied_at": now.isoformat(),
            "host_message": HOLD_EXPIRED_MESSAGE,
            "stripe_refund_id": refund_id,
        })
        booking = ledger.insert_booking(row)
        logger.info("payments.webhook hold invalid session=%s payment_status=%s", session_id, outcome.value)
        return {"booking_id": booking.get("id"), "status": BookingStatus.DENIED.value}

    pi: Dict[str, Any] = {}
    if pi_id:
        try:
            pi = gateway.retrieve_payment_intent(pi_id)
        except GatewayError:
            logger.warning("payments.webhook intent lookup failed session=%s pi=%s", session_id, pi_id)

    split = fee_split(total, settings.fee_rate)
    row.update({
        "platform_fee_cents": split.platform_fee_cents,
        "host_payout_cents": split.host_payout_cents,
        "stripe_fee_cents": estimate_gateway_fee(total, settings.gateway_fee_percent, settings.gateway_fee_fixed_cents),
        "stripe_charge_id": expandable_id(pi.get("latest_charge")),
    })

    auto_approved = bool(cls.get("auto_approve")) and (
        pi.get("status") == "succeeded" or session.get("payment_status") == "paid"
    )
    if auto_approved:
        row.update({
            "status": BookingStatus.APPROVED.value,
            "payment_status": PaymentStatus.HELD.value,
            "capture_status": CaptureStatus.CAPTURED.value,
            "approved_at": now.isoformat(),
            "captured_at": now.isoformat(),
        })
    else:
        row.update({
            "status": BookingStatus.PENDING.value,
            "payment_status": PaymentStatus.UNPAID.value,
            "capture_status": CaptureStatus.NONE.value,
        })

    booking = ledger.insert_booking(row)
    booking_id = booking.get("id")
    logger.info(
        "payments.webhook booking created id=%s session=%s status=%s total=%s",
        booking_id,
        session_id,
        row["status"],
        total,
    )
    if auto_approved and booking_id:
        outbox.submit(booking_id, NotificationKind.BOOKING_CONFIRMED_HOST)
        outbox.submit(booking_id, NotificationKind.BOOKING_CONFIRMED_GUEST)
    return {"booking_id": booking_id, "status": row["status"]}


def handle_account_updated(account: Dict[str, Any], *, ledger: BookingLedger) -> Dict[str, Any]:
    account_id = account.get("id")
    if not account_id:
        return {"ignored": "missing_account_id"}
    connected = bool(account.get("details_submitted"))
    updated = ledger.update_profile_by_account(account_id, {"stripe_connected": connected})
    if not updated:
        # Compte créé hors application: repli sur les métadonnées Stripe
        user_id = (account.get("metadata") or {}).get("supabase_user_id")
        if user_id:
            ledger.update_profile(user_id, {"stripe_account_id": account_id, "stripe_connected": connected})
    logger.info("payments.webhook account.updated account=%s connected=%s", account_id, connected)
    return {"account_id": account_id, "stripe_connected": connected}


def handle_webhook_event(
    payload: bytes,
    sig_header: Optional[str],
    *,
    ledger: BookingLedger,
    gateway: StripeGateway,
    outbox: NotificationOutbox,
    settings: Settings,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=500, detail="Webhook secret not configured")
    try:
        event = gateway.construct_event(payload, sig_header, settings.stripe_webhook_secret)
    except GatewayError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_id = event.get("id")
    event_type = event.get("type") or ""
    if event_id and not ledger.record_webhook_event(event_id, event_type):
        logger.info("payments.webhook duplicate event=%s type=%s", event_id, event_type)
        return {"received": True, "duplicate": True}

    obj = (event.get("data") or {}).get("object") or {}
    try:
        if event_type == "checkout.session.completed":
            result = handle_checkout_completed(
                obj, ledger=ledger, gateway=gateway, outbox=outbox, settings=settings, now=now
            )
        elif event_type == "account.updated":
            result = handle_account_updated(obj, ledger=ledger)
        else:
            result = {}
    except LedgerError:
        if event_id:
            ledger.forget_webhook_event(event_id)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"received": True, **result}
