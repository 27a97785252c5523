"""
Cas d'usage 'bookings': décisions de l'hôte (approbation = capture, refus = libération des fonds).

La capture est protégée par capture_status, utilisé comme verrou:
  NONE/CAPTURE_FAILED/NEEDS_RECONCILE -> CAPTURE_IN_PROGRESS (UPDATE conditionnel, avant l'appel Stripe)
  CAPTURE_IN_PROGRESS -> CAPTURED | CAPTURE_FAILED | NEEDS_RECONCILE
Deux approbations concurrentes ne peuvent donc produire qu'une seule capture.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import HTTPException

from herd.config import Settings
from herd.notifications.outbox import NotificationKind, NotificationOutbox
from herd.payments.pricing import fee_split
from herd.payments.stripe_client import (
    UNCAPTURED_INTENT_STATUSES,
    GatewayError,
    StripeGateway,
    expandable_id,
)

from .repository import BookingLedger, LedgerError, now_iso
from .states import (
    APPROVABLE_BOOKING_STATUSES,
    BookingStatus,
    CaptureStatus,
    PaymentStatus,
    capture_status_of,
)

logger = logging.getLogger(__name__)

RECONCILE_REASON_LEDGER_FAILED = "capture_succeeded_ledger_failed"
MAX_ERROR_LENGTH = 500

# NEEDS_RECONCILE n'en fait pas partie: la capture a peut-être déjà eu lieu chez Stripe
APPROVE_GATE_PRIORS = frozenset({CaptureStatus.NONE, CaptureStatus.CAPTURE_FAILED})


def _load_for_host(booking_id: str, user_id: str, ledger: BookingLedger) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Charge la réservation et sa classe; 404 si absentes, 403 si l'appelant n'est pas l'hôte."""
    if not booking_id:
        raise HTTPException(status_code=400, detail="Missing booking_id")
    booking = ledger.get_booking(booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    cls = ledger.get_class(booking.get("class_id"))
    if not cls:
        raise HTTPException(status_code=404, detail="Class not found")
    if str(cls.get("host_id") or "") != str(user_id):
        raise HTTPException(status_code=403, detail="Forbidden")
    return booking, cls


def resolve_payment_intent(booking: Dict[str, Any], *, ledger: BookingLedger, gateway: StripeGateway) -> Optional[str]:
    """
    Id du PaymentIntent de la réservation. Rattrapage paresseux pour les anciennes lignes:
    lu depuis la session Checkout (expand payment_intent) puis réécrit en base.
    """
    pi_id = booking.get("stripe_payment_intent_id")
    if pi_id:
        return pi_id
    session_id = booking.get("stripe_checkout_session_id")
    if not session_id:
        return None
    try:
        session = gateway.retrieve_checkout_session(session_id, expand=["payment_intent"])
    except GatewayError:
        logger.warning("bookings.resolve_payment_intent session lookup failed booking_id=%s", booking.get("id"))
        return None
    pi_id = expandable_id(session.get("payment_intent"))
    if pi_id:
        try:
            ledger.update_booking(booking["id"], {"stripe_payment_intent_id": pi_id})
        except LedgerError:
            # backfill au mieux: l'id reste utilisable pour cette requête
            logger.warning("bookings.resolve_payment_intent backfill failed booking_id=%s", booking.get("id"))
        booking["stripe_payment_intent_id"] = pi_id
    return pi_id


def _promote_to_reconciliation(
    booking: Dict[str, Any],
    payment_intent: Dict[str, Any],
    error: str,
    ledger: BookingLedger,
) -> None:
    """Capture faite chez Stripe mais non enregistrée: jamais de nouvelle capture, on trace pour réparation."""
    booking_id = booking["id"]
    details = {
        "error": error[:MAX_ERROR_LENGTH],
        "payment_intent_status": payment_intent.get("status"),
        "charge_id": expandable_id(payment_intent.get("latest_charge")),
        "amount_received": payment_intent.get("amount_received"),
    }
    try:
        ledger.create_reconciliation(booking, reason=RECONCILE_REASON_LEDGER_FAILED, details=details)
    except LedgerError:
        logger.critical(
            "bookings.approve reconciliation record failed booking_id=%s pi=%s",
            booking_id,
            booking.get("stripe_payment_intent_id"),
        )
    try:
        ledger.transition_capture(
            booking_id,
            CaptureStatus.NEEDS_RECONCILE,
            {"capture_last_error": error[:MAX_ERROR_LENGTH]},
            expected={CaptureStatus.CAPTURE_IN_PROGRESS},
        )
    except LedgerError:
        logger.exception("bookings.approve NEEDS_RECONCILE flag failed booking_id=%s", booking_id)


def approve_booking(
    booking_id: str,
    *,
    user_id: str,
    ledger: BookingLedger,
    gateway: StripeGateway,
    outbox: NotificationOutbox,
    settings: Settings,
) -> Dict[str, Any]:
    """
    Approbation par l'hôte: capture des fonds retenus puis calcul de la répartition.
    - idempotent: une réservation déjà capturée renvoie {"ok": True, "already_captured": True}
    - 409 si une capture est déjà en cours ou si une réconciliation est en attente
    - échec Stripe: CAPTURE_FAILED + 500 (réessayable)
    - capture OK mais écriture KO: NEEDS_RECONCILE + dossier de réconciliation + 500
    """
    booking, _cls = _load_for_host(booking_id, user_id, ledger)

    if booking.get("status") not in {s.value for s in APPROVABLE_BOOKING_STATUSES}:
        raise HTTPException(status_code=400, detail="Not approvable")

    pi_id = resolve_payment_intent(booking, ledger=ledger, gateway=gateway)

    capture = capture_status_of(booking)
    if capture == CaptureStatus.CAPTURED or booking.get("payment_status") == PaymentStatus.HELD.value:
        logger.info("bookings.approve already_captured booking_id=%s", booking_id)
        return {"ok": True, "already_captured": True}
    if capture == CaptureStatus.CAPTURE_IN_PROGRESS:
        raise HTTPException(status_code=409, detail="Capture already in progress")
    if capture == CaptureStatus.NEEDS_RECONCILE or ledger.has_open_reconciliation(booking_id):
        # réparation laissée au balayage de réconciliation, jamais de seconde capture
        logger.warning("bookings.approve reconciliation pending booking_id=%s", booking_id)
        raise HTTPException(status_code=409, detail="Payment reconciliation pending")
    if not pi_id:
        raise HTTPException(status_code=400, detail="Missing payment intent")

    attempt = int(booking.get("capture_attempt_count") or 0) + 1
    gated = ledger.transition_capture(
        booking_id,
        CaptureStatus.CAPTURE_IN_PROGRESS,
        {"capture_attempt_count": attempt, "capture_last_error": None},
        expected=APPROVE_GATE_PRIORS,
    )
    if gated is None:
        # Course perdue: une autre invocation a pris le verrou entre lecture et écriture
        current = ledger.get_booking(booking_id) or {}
        if capture_status_of(current) == CaptureStatus.CAPTURED:
            return {"ok": True, "already_captured": True}
        raise HTTPException(status_code=409, detail="Capture already in progress")

    try:
        pi = gateway.capture_payment_intent(pi_id, idempotency_key=f"capture_{booking_id}_{attempt}")
    except GatewayError as e:
        try:
            ledger.transition_capture(
                booking_id,
                CaptureStatus.CAPTURE_FAILED,
                {"capture_last_error": e.message[:MAX_ERROR_LENGTH]},
                expected={CaptureStatus.CAPTURE_IN_PROGRESS},
            )
        except LedgerError:
            logger.exception("bookings.approve CAPTURE_FAILED write failed booking_id=%s", booking_id)
        logger.warning("bookings.approve capture failed booking_id=%s attempt=%s", booking_id, attempt)
        raise HTTPException(status_code=500, detail=e.message or "Capture failed")

    total = int(booking.get("total_cents") or pi.get("amount_received") or pi.get("amount") or 0)
    split = fee_split(total, settings.fee_rate)
    captured_at = now_iso()
    fields = {
        "status": BookingStatus.APPROVED.value,
        "payment_status": PaymentStatus.HELD.value,
        "approved_at": captured_at,
        "captured_at": captured_at,
        "capture_last_error": None,
        "stripe_charge_id": expandable_id(pi.get("latest_charge")) or booking.get("stripe_charge_id"),
        "total_cents": split.total_cents,
        "platform_fee_cents": split.platform_fee_cents,
        "host_payout_cents": split.host_payout_cents,
    }
    try:
        updated = ledger.transition_capture(
            booking_id,
            CaptureStatus.CAPTURED,
            fields,
            expected={CaptureStatus.CAPTURE_IN_PROGRESS},
        )
        if updated is None:
            raise LedgerError("capture_status changed while capturing")
    except LedgerError as e:
        logger.error("bookings.approve ledger write failed after capture booking_id=%s pi=%s", booking_id, pi_id)
        _promote_to_reconciliation(booking, pi, str(e) or "ledger write failed", ledger)
        raise HTTPException(status_code=500, detail="Payment captured but booking update failed")

    logger.info(
        "bookings.approve captured booking_id=%s pi=%s fee=%s payout=%s",
        booking_id,
        pi_id,
        split.platform_fee_cents,
        split.host_payout_cents,
    )
    outbox.submit(booking_id, NotificationKind.BOOKING_CONFIRMED_HOST)
    outbox.submit(booking_id, NotificationKind.BOOKING_CONFIRMED_GUEST)
    return {"ok": True}


def _release_funds(booking_id: str, pi_id: str, gateway: StripeGateway) -> Tuple[PaymentStatus, Optional[str]]:
    """
    Autorisation encore ouverte -> annulation (FAILED); déjà capturée -> remboursement (REFUNDED).
    Toute erreur Stripe -> FAILED: jamais de réservation ambiguë marquée payée.
    """
    try:
        pi = gateway.retrieve_payment_intent(pi_id)
        status = pi.get("status")
        if status in UNCAPTURED_INTENT_STATUSES:
            gateway.cancel_payment_intent(pi_id)
            return PaymentStatus.FAILED, None
        if status == "succeeded":
            refund = gateway.create_refund(pi_id, idempotency_key=f"deny_{booking_id}")
            return PaymentStatus.REFUNDED, refund.get("id")
        logger.info("bookings.deny intent status=%s booking_id=%s", status, booking_id)
        return PaymentStatus.FAILED, None
    except GatewayError:
        logger.warning("bookings.deny gateway error booking_id=%s pi=%s", booking_id, pi_id)
        return PaymentStatus.FAILED, None


def deny_booking(
    booking_id: str,
    *,
    user_id: str,
    message: Optional[str],
    ledger: BookingLedger,
    gateway: StripeGateway,
) -> Dict[str, Any]:
    """Refus par l'hôte d'une réservation PENDING: libère les fonds puis écrit DENIED en une seule mise à jour."""
    booking, _cls = _load_for_host(booking_id, user_id, ledger)
    if booking.get("status") != BookingStatus.PENDING.value:
        raise HTTPException(status_code=400, detail="Not deniable")

    pi_id = resolve_payment_intent(booking, ledger=ledger, gateway=gateway)

    refund_id = None
    if booking.get("payment_status") == PaymentStatus.REFUNDED.value:
        outcome = PaymentStatus.REFUNDED
        refund_id = booking.get("stripe_refund_id")
    elif not pi_id:
        outcome = PaymentStatus.FAILED
    else:
        outcome, refund_id = _release_funds(booking_id, pi_id, gateway)

    fields: Dict[str, Any] = {
        "status": BookingStatus.DENIED.value,
        "payment_status": outcome.value,
        "denied_at": datetime.now(timezone.utc).isoformat(),
        "host_message": (message or "").strip() or None,
    }
    if refund_id:
        fields["stripe_refund_id"] = refund_id
    ledger.update_booking(booking_id, fields)

    logger.info("bookings.deny booking_id=%s payment_status=%s refund=%s", booking_id, outcome.value, refund_id)
    return {"ok": True, "payment_status": outcome.value}
