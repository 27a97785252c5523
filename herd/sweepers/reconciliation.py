"""
Réconciliation des paiements: répare les réservations dont la capture Stripe a réussi
sans que le registre ait pu l'enregistrer. Ne capture jamais: ne fait que constater
l'état du PaymentIntent et le recopier.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from herd.bookings.repository import BookingLedger, now_iso
from herd.bookings.states import (
    BookingStatus,
    CaptureStatus,
    PaymentStatus,
    capture_status_of,
    is_terminal,
)
from herd.config import Settings
from herd.payments.pricing import fee_split
from herd.payments.stripe_client import GatewayError, StripeGateway, expandable_id

logger = logging.getLogger(__name__)

STALE_CAPTURE_REASON = "capture_in_progress_stale"
STALE_CAPTURE_MINUTES = 15

# Réparation dictée par Stripe: tout état sauf CAPTURED peut devenir CAPTURED
REPAIRABLE = frozenset({
    CaptureStatus.NONE,
    CaptureStatus.CAPTURE_IN_PROGRESS,
    CaptureStatus.CAPTURE_FAILED,
    CaptureStatus.NEEDS_RECONCILE,
})
IN_FLIGHT = frozenset({CaptureStatus.CAPTURE_IN_PROGRESS, CaptureStatus.NEEDS_RECONCILE})


def open_stale_captures(*, ledger: BookingLedger, settings: Settings, now: Optional[datetime] = None) -> int:
    """Ouvre un dossier pour chaque capture restée CAPTURE_IN_PROGRESS trop longtemps."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=STALE_CAPTURE_MINUTES)
    opened = 0
    for booking in ledger.list_stale_captures(cutoff, settings.reconcile_batch_limit):
        if ledger.has_open_reconciliation(booking["id"]):
            continue
        ledger.create_reconciliation(booking, reason=STALE_CAPTURE_REASON, details={"detected_at": now.isoformat()})
        opened += 1
    if opened:
        logger.warning("sweepers.reconcile stale captures opened=%s", opened)
    return opened


def _resolve(ledger: BookingLedger, record: Dict[str, Any], **extra: Any) -> None:
    details = dict(record.get("details") or {})
    details.update(extra)
    ledger.resolve_reconciliation(record["id"], details)


def reconcile_one(
    record: Dict[str, Any],
    *,
    ledger: BookingLedger,
    gateway: StripeGateway,
    settings: Settings,
    now: Optional[datetime] = None,
) -> bool:
    """True si le dossier est clos, False s'il reste OPEN (réessai au prochain passage)."""
    booking = ledger.get_booking(record.get("booking_id"))
    if not booking:
        _resolve(ledger, record, error="booking_not_found")
        return True
    if is_terminal(booking):
        _resolve(ledger, record, skipped="terminal_booking_status")
        return True
    if capture_status_of(booking) == CaptureStatus.CAPTURED and booking.get("payment_status") == PaymentStatus.HELD.value:
        _resolve(ledger, record, skipped="already_captured")
        return True

    booking_id = booking["id"]
    pi_id = booking.get("stripe_payment_intent_id") or record.get("stripe_payment_intent_id")
    if not pi_id:
        ledger.transition_capture(
            booking_id,
            CaptureStatus.CAPTURE_FAILED,
            {"capture_last_error": "Missing payment_intent_id for reconciliation"},
            expected=IN_FLIGHT,
        )
        _resolve(ledger, record, action="marked_failed", error="missing_payment_intent")
        return True

    try:
        pi = gateway.retrieve_payment_intent(pi_id)
    except GatewayError:
        logger.warning("sweepers.reconcile intent lookup failed booking_id=%s pi=%s", booking_id, pi_id)
        return False

    status = pi.get("status")
    if status == "succeeded":
        fields: Dict[str, Any] = {
            "status": BookingStatus.APPROVED.value,
            "payment_status": PaymentStatus.HELD.value,
            "captured_at": booking.get("captured_at") or now_iso(now),
            "approved_at": booking.get("approved_at") or now_iso(now),
            "capture_last_error": None,
            "stripe_payment_intent_id": pi_id,
        }
        if not booking.get("stripe_charge_id"):
            fields["stripe_charge_id"] = expandable_id(pi.get("latest_charge"))
        if booking.get("platform_fee_cents") is None or booking.get("host_payout_cents") is None:
            total = int(booking.get("total_cents") or pi.get("amount_received") or 0)
            split = fee_split(total, settings.fee_rate)
            fields.update({
                "total_cents": split.total_cents,
                "platform_fee_cents": split.platform_fee_cents,
                "host_payout_cents": split.host_payout_cents,
            })
        updated = ledger.transition_capture(booking_id, CaptureStatus.CAPTURED, fields, expected=REPAIRABLE)
        if updated is None:
            current = ledger.get_booking(booking_id) or {}
            if capture_status_of(current) != CaptureStatus.CAPTURED:
                return False
        _resolve(ledger, record, action="marked_captured", payment_intent_status=status)
        logger.info("sweepers.reconcile marked_captured booking_id=%s pi=%s", booking_id, pi_id)
        return True

    ledger.transition_capture(
        booking_id,
        CaptureStatus.CAPTURE_FAILED,
        {"capture_last_error": f"PaymentIntent status {status}"},
        expected=IN_FLIGHT,
    )
    _resolve(ledger, record, action="marked_failed", payment_intent_status=status)
    logger.info("sweepers.reconcile marked_failed booking_id=%s pi=%s status=%s", booking_id, pi_id, status)
    return True


def reconcile_payments(
    *,
    ledger: BookingLedger,
    gateway: StripeGateway,
    settings: Settings,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    counters = {"ok": True, "processed": 0, "resolved": 0, "failed": 0}
    try:
        open_stale_captures(ledger=ledger, settings=settings, now=now)
    except Exception:
        logger.exception("sweepers.reconcile stale capture scan failed")

    for record in ledger.list_open_reconciliations(settings.reconcile_batch_limit):
        counters["processed"] += 1
        try:
            if reconcile_one(record, ledger=ledger, gateway=gateway, settings=settings, now=now):
                counters["resolved"] += 1
            else:
                counters["failed"] += 1
        except Exception:
            counters["failed"] += 1
            logger.exception("sweepers.reconcile record failed id=%s", record.get("id"))

    logger.info(
        "sweepers.reconcile processed=%s resolved=%s failed=%s",
        counters["processed"],
        counters["resolved"],
        counters["failed"],
    )
    return counters
