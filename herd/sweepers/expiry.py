"""
Balayages d'expiration (idempotents, relançables à volonté):
- retenues de places HELD échues -> EXPIRED (base seule)
- réservations PENDING dont la classe est terminée -> DENIED/FAILED, autorisation Stripe annulée au mieux
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

from herd.bookings.repository import BookingLedger
from herd.bookings.states import CaptureStatus, PaymentStatus, capture_status_of
from herd.config import Settings
from herd.payments.stripe_client import GatewayError, StripeGateway

logger = logging.getLogger(__name__)

AUTO_DENY_MESSAGE = "Automatically denied because the class date has passed."
END_OF_DAY = time(23, 59, 59, 999000)

# Capture engagée: la réservation appartient au chemin d'approbation / réconciliation
CAPTURE_OWNED = frozenset({
    CaptureStatus.CAPTURE_IN_PROGRESS,
    CaptureStatus.CAPTURED,
    CaptureStatus.NEEDS_RECONCILE,
})


def expire_booking_holds(*, ledger: BookingLedger, now: Optional[datetime] = None) -> Dict[str, Any]:
    expired = ledger.expire_holds(now)
    logger.info("sweepers.expire_booking_holds expired=%s", expired)
    return {"ok": True, "expired": expired}


def clamp_limit(raw: Any, settings: Settings) -> int:
    """?limit= : défaut si absent/invalide, plafonné."""
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return settings.pending_sweep_default_limit
    if value <= 0:
        return settings.pending_sweep_default_limit
    return min(value, settings.pending_sweep_max_limit)


def parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _parse_time(value: Any) -> Optional[time]:
    if not value:
        return None
    try:
        return time.fromisoformat(str(value)[:8])
    except ValueError:
        return None


def _positive(value: Any) -> float:
    try:
        n = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    return n if n > 0 else 0.0


def class_end_instant(cls: Dict[str, Any]) -> Optional[datetime]:
    """
    Fin effective d'une classe (UTC):
    1) end_date à 23:59:59.999
    2) sinon dernière séance: start_date + (number_of_days - 1) jours + start_time + hours_per_day
    3) sinon start_date à 23:59:59.999
    """
    end_date = parse_date(cls.get("end_date"))
    if end_date:
        return datetime.combine(end_date, END_OF_DAY, tzinfo=timezone.utc)
    start_date = parse_date(cls.get("start_date"))
    if not start_date:
        return None
    start_time = _parse_time(cls.get("start_time"))
    hours = _positive(cls.get("hours_per_day"))
    days = _positive(cls.get("number_of_days"))
    if start_time is not None and hours and days:
        first = datetime.combine(start_date, start_time, tzinfo=timezone.utc)
        return first + timedelta(days=int(days) - 1, hours=hours)
    return datetime.combine(start_date, END_OF_DAY, tzinfo=timezone.utc)


def expire_pending_bookings(
    *,
    ledger: BookingLedger,
    gateway: StripeGateway,
    settings: Settings,
    limit: Any = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    rows = ledger.list_pending_bookings(clamp_limit(limit, settings))
    summary = {"ok": True, "scanned": len(rows), "expired": 0, "cancelled": 0, "failed": 0}

    for row in rows:
        booking_id = row.get("id")
        try:
            if capture_status_of(row) in CAPTURE_OWNED:
                continue
            cls = row.get("classes") or {}
            if isinstance(cls, list):
                cls = cls[0] if cls else {}
            end = class_end_instant(cls)
            if end is None or end > now:
                continue

            pi_id = row.get("stripe_payment_intent_id")
            if pi_id:
                try:
                    gateway.cancel_payment_intent(pi_id)
                    summary["cancelled"] += 1
                except GatewayError:
                    # au mieux: le refus est écrit quoi qu'il arrive
                    logger.warning("sweepers.expire_pending cancel failed booking_id=%s pi=%s", booking_id, pi_id)

            updated = ledger.deny_pending(booking_id, {
                "payment_status": PaymentStatus.FAILED.value,
                "denied_at": now.isoformat(),
                "host_message": AUTO_DENY_MESSAGE,
            })
            if updated:
                summary["expired"] += 1
        except Exception:
            summary["failed"] += 1
            logger.exception("sweepers.expire_pending row failed booking_id=%s", booking_id)

    logger.info(
        "sweepers.expire_pending scanned=%s expired=%s cancelled=%s failed=%s",
        summary["scanned"],
        summary["expired"],
        summary["cancelled"],
        summary["failed"],
    )
    return summary
