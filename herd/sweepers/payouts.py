"""
Versement aux hôtes des fonds capturés, une classe par invocation.
Arrêt au premier échec dans une classe: pas de versement partiel à défaire.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from herd.bookings.repository import BookingLedger, LedgerError
from herd.bookings.states import CaptureStatus, PaymentStatus, capture_status_of
from herd.config import Settings
from herd.notifications.outbox import NotificationKind, NotificationOutbox
from herd.payments.stripe_client import GatewayError, StripeGateway

from .expiry import END_OF_DAY, parse_date

logger = logging.getLogger(__name__)


def is_payout_due(class_end: datetime, buffer_hours: int, now: datetime) -> bool:
    return class_end + timedelta(hours=buffer_hours) <= now


def row_class_end(row: Dict[str, Any]) -> Optional[datetime]:
    """Fin de classe d'une ligne herd_due_payouts: class_end_utc, sinon class_end_date à 23:59:59.999."""
    raw = row.get("class_end_utc")
    if raw:
        try:
            end = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            end = None
        if end is not None:
            return end if end.tzinfo else end.replace(tzinfo=timezone.utc)
    end_date = parse_date(row.get("class_end_date"))
    if end_date:
        return datetime.combine(end_date, END_OF_DAY, tzinfo=timezone.utc)
    return None


def _group_due(rows: List[Dict[str, Any]], settings: Settings, now: datetime) -> "OrderedDict[str, List[Dict[str, Any]]]":
    classes: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
    for row in rows:
        end = row_class_end(row)
        if end is None or not is_payout_due(end, settings.payout_buffer_hours, now):
            continue
        classes.setdefault(str(row.get("class_id")), []).append(row)
    return classes


def _is_payable(row: Dict[str, Any]) -> bool:
    try:
        amount = int(row.get("host_payout_cents") or 0)
    except (TypeError, ValueError):
        amount = 0
    return amount > 0 and bool(row.get("host_stripe_account_id"))


def _review_ids(rows: List[Dict[str, Any]], settings: Settings, now: datetime) -> List[str]:
    ids = []
    for row in rows:
        end = row_class_end(row)
        if end is not None and end + timedelta(hours=settings.review_unlock_hours) <= now:
            ids.append(row["id"])
    return ids


def _transfer_params(row: Dict[str, Any], booking: Dict[str, Any], class_id: str, settings: Settings) -> Dict[str, Any]:
    booking_id = row["id"]
    params: Dict[str, Any] = {
        "amount": int(row["host_payout_cents"]),
        "currency": settings.currency,
        "destination": row["host_stripe_account_id"],
        "description": f"HERD payout for booking {booking_id}",
        "metadata": {"booking_id": str(booking_id), "class_id": class_id},
    }
    charge_id = row.get("stripe_charge_id") or booking.get("stripe_charge_id") or ""
    if charge_id.startswith("ch_"):
        params["source_transaction"] = charge_id
    else:
        params["transfer_group"] = f"booking_{booking_id}"
    return params


def _unlock_reviews(review_ids: List[str], class_id: Optional[str], ledger: BookingLedger) -> int:
    if not review_ids:
        return 0
    try:
        return ledger.unlock_reviews(review_ids)
    except LedgerError:
        logger.exception("sweepers.payouts review unlock failed class_id=%s", class_id)
        return 0


def _release_class(
    class_id: str,
    rows: List[Dict[str, Any]],
    *,
    ledger: BookingLedger,
    gateway: StripeGateway,
    settings: Settings,
    now: datetime,
) -> Tuple[List[str], int, int]:
    """Verse les réservations d'une classe dans l'ordre; s'arrête au premier échec. -> (payées, total, échecs)"""
    paid: List[str] = []
    total_paid = failed = 0
    for row in rows:
        booking_id = row["id"]
        booking = ledger.get_booking(booking_id)
        if (
            not booking
            or booking.get("payment_status") != PaymentStatus.HELD.value
            or capture_status_of(booking) != CaptureStatus.CAPTURED
        ):
            logger.info("sweepers.payouts skip booking_id=%s (not HELD/CAPTURED)", booking_id)
            continue

        params = _transfer_params(row, booking, class_id, settings)
        try:
            transfer = gateway.create_transfer(params, idempotency_key=f"payout_{booking_id}")
        except GatewayError:
            failed += 1
            logger.error("sweepers.payouts transfer failed booking_id=%s class_id=%s", booking_id, class_id)
            break

        try:
            ledger.mark_paid_out(booking_id, transfer.get("id"), now)
        except LedgerError:
            # le transfert existe chez Stripe; la clé payout_<id> évite un doublon au prochain passage
            failed += 1
            logger.critical(
                "sweepers.payouts ledger write failed after transfer booking_id=%s transfer=%s",
                booking_id,
                transfer.get("id"),
            )
            break

        total_paid += params["amount"]
        paid.append(booking_id)
    return paid, total_paid, failed


def release_held_payments(
    *,
    ledger: BookingLedger,
    gateway: StripeGateway,
    outbox: NotificationOutbox,
    settings: Settings,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Une classe versée par invocation. Ne bloquent pas les classes suivantes:
    - une classe impayable (compte hôte absent, montant manquant), écartée de la sélection
    - une classe dont le premier transfert échoue; la suivante est tentée dans la même invocation
    """
    now = now or datetime.now(timezone.utc)
    classes = _group_due(ledger.due_payouts(settings.payout_buffer_hours), settings, now)

    blocked = [cid for cid, rows in classes.items() if not all(_is_payable(r) for r in rows)]
    review_ids: List[str] = []
    for cid in blocked:
        logger.warning("sweepers.payouts class blocked (missing amount/destination) class_id=%s", cid)
        review_ids.extend(_review_ids(classes.pop(cid), settings, now))

    class_id: Optional[str] = None
    paid: List[str] = []
    total_paid = failed = 0
    while classes:
        class_id, rows = classes.popitem(last=False)
        review_ids.extend(_review_ids(rows, settings, now))
        paid, total_paid, class_failed = _release_class(
            class_id, rows, ledger=ledger, gateway=gateway, settings=settings, now=now
        )
        failed += class_failed
        if paid or not class_failed:
            break

    unlocked = _unlock_reviews(review_ids, class_id, ledger)

    if paid:
        outbox.submit(
            paid[0],
            NotificationKind.PAYOUT_RELEASED_HOST,
            variables={
                "class_id": class_id,
                "bookings": len(paid),
                "booking_ids": paid,
                "total_cents": total_paid,
            },
        )

    logger.info(
        "sweepers.payouts class_id=%s success=%s failed=%s reviews_unlocked=%s remaining=%s blocked=%s",
        class_id,
        len(paid),
        failed,
        unlocked,
        len(classes),
        len(blocked),
    )
    return {
        "ok": True,
        "success": len(paid),
        "failed": failed,
        "class_id": class_id,
        "remaining_classes": len(classes),
        "blocked_classes": len(blocked),
    }
