"""
Accès aux données du registre des réservations (tables Supabase via le client service-role).

Toutes les transitions d'état sensibles sont des UPDATE conditionnels: la requête filtre
sur l'état attendu et retourne les lignes modifiées. Zéro ligne == course perdue (None).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client

from .states import (
    BookingStatus,
    CaptureStatus,
    HoldStatus,
    PaymentStatus,
    ReconciliationStatus,
    allowed_prior_states,
)

logger = logging.getLogger(__name__)

BOOKING_COLUMNS = (
    "id, user_id, class_id, qty, student_names, status, payment_status, capture_status, "
    "capture_attempt_count, capture_last_error, total_cents, platform_fee_cents, host_payout_cents, "
    "stripe_fee_cents, stripe_checkout_session_id, stripe_payment_intent_id, stripe_charge_id, "
    "stripe_transfer_id, stripe_refund_id, host_message, approved_at, denied_at, captured_at, "
    "paid_out_at, review_allowed, created_at, updated_at"
)
CLASS_COLUMNS = (
    "id, title, host_id, price_per_person_cents, auto_approve, start_date, end_date, "
    "start_time, hours_per_day, number_of_days"
)
CLASS_SCHEDULE_COLUMNS = "start_date, end_date, start_time, hours_per_day, number_of_days"

# Postgres: violation de contrainte unique
UNIQUE_VIOLATION = "23505"

StoreErrors = (APIError, httpx.HTTPError)


class LedgerError(Exception):
    """Échec de lecture/écriture du registre dont l'appelant doit tenir compte."""


def now_iso(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def _values(states: Iterable[Any]) -> List[str]:
    return sorted(s.value if hasattr(s, "value") else str(s) for s in states)


def _filter_capture_in(query, states: Iterable[CaptureStatus]):
    """
    Filtre `capture_status IN (...)`. NONE couvre aussi NULL (lignes historiques),
    d'où un OR explicite: `NULL IN (...)` est faux en SQL.
    """
    values = _values(states)
    if CaptureStatus.NONE.value in values:
        return query.or_(f"capture_status.is.null,capture_status.in.({','.join(values)})")
    return query.in_("capture_status", values)


class BookingLedger:
    def __init__(self, client: Client):
        self._client = client

    def _table(self, name: str):
        return self._client.table(name)

    # --- bookings ---

    def get_booking(self, booking_id: str) -> Optional[Dict[str, Any]]:
        try:
            res = (
                self._table("bookings")
                .select(BOOKING_COLUMNS)
                .eq("id", booking_id)
                .limit(1)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.get_booking failed booking_id=%s", booking_id)
            raise LedgerError(str(e)) from e
        rows = res.data or []
        return rows[0] if rows else None

    def get_booking_by_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            res = (
                self._table("bookings")
                .select(BOOKING_COLUMNS)
                .eq("stripe_checkout_session_id", session_id)
                .limit(1)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.get_booking_by_session failed session_id=%s", session_id)
            raise LedgerError(str(e)) from e
        rows = res.data or []
        return rows[0] if rows else None

    def insert_booking(self, row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            res = self._table("bookings").insert(row).execute()
        except StoreErrors as e:
            logger.exception(
                "bookings.repository.insert_booking failed session_id=%s",
                row.get("stripe_checkout_session_id"),
            )
            raise LedgerError(str(e)) from e
        rows = res.data or []
        return rows[0] if rows else dict(row)

    def update_booking(self, booking_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """UPDATE inconditionnel par id. Lève LedgerError si l'écriture échoue."""
        payload = {**fields, "updated_at": now_iso()}
        try:
            res = self._table("bookings").update(payload).eq("id", booking_id).execute()
        except StoreErrors as e:
            logger.exception("bookings.repository.update_booking failed booking_id=%s", booking_id)
            raise LedgerError(str(e)) from e
        rows = res.data or []
        return rows[0] if rows else None

    def transition_capture(
        self,
        booking_id: str,
        target: CaptureStatus,
        fields: Optional[Dict[str, Any]] = None,
        *,
        expected: Optional[Iterable[CaptureStatus]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Compare-and-set sur capture_status:
        - n'écrit que si l'état courant ∈ expected (par défaut: prédécesseurs autorisés de target)
        - retourne la ligne modifiée, ou None si la ligne n'était pas dans un état attendu
        """
        prior = frozenset(expected) if expected is not None else allowed_prior_states(target)
        payload = {**(fields or {}), "capture_status": target.value, "updated_at": now_iso()}
        try:
            query = self._table("bookings").update(payload).eq("id", booking_id)
            res = _filter_capture_in(query, prior).execute()
        except StoreErrors as e:
            logger.exception(
                "bookings.repository.transition_capture failed booking_id=%s target=%s",
                booking_id,
                target.value,
            )
            raise LedgerError(str(e)) from e
        rows = res.data or []
        return rows[0] if rows else None

    def deny_pending(self, booking_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Refus automatique: seulement si encore PENDING et aucune capture engagée."""
        payload = {**fields, "status": BookingStatus.DENIED.value, "updated_at": now_iso()}
        try:
            query = (
                self._table("bookings")
                .update(payload)
                .eq("id", booking_id)
                .eq("status", BookingStatus.PENDING.value)
            )
            res = _filter_capture_in(query, {CaptureStatus.NONE, CaptureStatus.CAPTURE_FAILED}).execute()
        except StoreErrors as e:
            logger.exception("bookings.repository.deny_pending failed booking_id=%s", booking_id)
            raise LedgerError(str(e)) from e
        rows = res.data or []
        return rows[0] if rows else None

    def list_pending_bookings(self, limit: int) -> List[Dict[str, Any]]:
        try:
            res = (
                self._table("bookings")
                .select(
                    "id, status, payment_status, capture_status, stripe_payment_intent_id, "
                    f"class_id, classes({CLASS_SCHEDULE_COLUMNS})"
                )
                .eq("status", BookingStatus.PENDING.value)
                .order("created_at")
                .limit(limit)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.list_pending_bookings failed limit=%s", limit)
            raise LedgerError(str(e)) from e
        return res.data or []

    def mark_paid_out(self, booking_id: str, transfer_id: str, paid_at: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """HELD -> COMPLETED, conditionnel (un versement déjà enregistré n'est pas réécrit)."""
        payload = {
            "payment_status": PaymentStatus.COMPLETED.value,
            "stripe_transfer_id": transfer_id,
            "paid_out_at": now_iso(paid_at),
            "updated_at": now_iso(),
        }
        try:
            res = (
                self._table("bookings")
                .update(payload)
                .eq("id", booking_id)
                .eq("payment_status", PaymentStatus.HELD.value)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.mark_paid_out failed booking_id=%s", booking_id)
            raise LedgerError(str(e)) from e
        rows = res.data or []
        return rows[0] if rows else None

    def unlock_reviews(self, booking_ids: List[str]) -> int:
        if not booking_ids:
            return 0
        try:
            res = (
                self._table("bookings")
                .update({"review_allowed": True, "updated_at": now_iso()})
                .in_("id", list(booking_ids))
                .eq("review_allowed", False)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.unlock_reviews failed count=%s", len(booking_ids))
            raise LedgerError(str(e)) from e
        return len(res.data or [])

    def due_payouts(self, buffer_hours: int) -> List[Dict[str, Any]]:
        try:
            res = self._client.rpc("herd_due_payouts", {"buffer_hours": buffer_hours}).execute()
        except StoreErrors as e:
            logger.exception("bookings.repository.due_payouts failed buffer_hours=%s", buffer_hours)
            raise LedgerError(str(e)) from e
        return res.data or []

    # --- classes ---

    def get_class(self, class_id: str) -> Optional[Dict[str, Any]]:
        try:
            res = (
                self._table("classes")
                .select(CLASS_COLUMNS)
                .eq("id", class_id)
                .limit(1)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.get_class failed class_id=%s", class_id)
            raise LedgerError(str(e)) from e
        rows = res.data or []
        return rows[0] if rows else None

    def available_spots(self, class_id: str) -> int:
        """Places libres, places déjà retenues comprises (fonction SQL available_spots)."""
        try:
            res = self._client.rpc("available_spots", {"class_uuid": class_id}).execute()
        except StoreErrors as e:
            logger.exception("bookings.repository.available_spots failed class_id=%s", class_id)
            raise LedgerError(str(e)) from e
        data = res.data
        if isinstance(data, list):
            data = data[0] if data else 0
        if isinstance(data, dict):
            data = next(iter(data.values()), 0)
        try:
            return int(data or 0)
        except (TypeError, ValueError):
            return 0

    # --- booking_holds ---

    def create_hold(self, *, class_id: str, guest_id: str, quantity: int, expires_at: datetime) -> Dict[str, Any]:
        row = {
            "class_id": class_id,
            "guest_id": guest_id,
            "quantity": quantity,
            "status": HoldStatus.HELD.value,
            "expires_at": expires_at.isoformat(),
        }
        try:
            res = self._table("booking_holds").insert(row).execute()
        except StoreErrors as e:
            logger.exception("bookings.repository.create_hold failed class_id=%s guest_id=%s", class_id, guest_id)
            raise LedgerError(str(e)) from e
        rows = res.data or []
        if not rows:
            raise LedgerError("booking_holds insert returned no row")
        return rows[0]

    def attach_hold_session(self, hold_id: str, session_id: str) -> None:
        try:
            (
                self._table("booking_holds")
                .update({"stripe_checkout_session_id": session_id})
                .eq("id", hold_id)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.attach_hold_session failed hold_id=%s", hold_id)
            raise LedgerError(str(e)) from e

    def cancel_hold(self, hold_id: str) -> None:
        try:
            (
                self._table("booking_holds")
                .update({"status": HoldStatus.CANCELLED.value})
                .eq("id", hold_id)
                .eq("status", HoldStatus.HELD.value)
                .execute()
            )
        except StoreErrors:
            # Sans gravité: la retenue expirera d'elle-même
            logger.exception("bookings.repository.cancel_hold failed hold_id=%s", hold_id)

    def consume_hold(self, session_id: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """HELD et non expirée -> CONSUMED. None si absente, expirée ou déjà consommée."""
        try:
            res = (
                self._table("booking_holds")
                .update({"status": HoldStatus.CONSUMED.value})
                .eq("stripe_checkout_session_id", session_id)
                .eq("status", HoldStatus.HELD.value)
                .gt("expires_at", now_iso(now))
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.consume_hold failed session_id=%s", session_id)
            raise LedgerError(str(e)) from e
        rows = res.data or []
        return rows[0] if rows else None

    def get_hold_by_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            res = (
                self._table("booking_holds")
                .select("id, class_id, guest_id, quantity, status, expires_at")
                .eq("stripe_checkout_session_id", session_id)
                .limit(1)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.get_hold_by_session failed session_id=%s", session_id)
            raise LedgerError(str(e)) from e
        rows = res.data or []
        return rows[0] if rows else None

    def expire_holds(self, now: Optional[datetime] = None) -> int:
        try:
            res = (
                self._table("booking_holds")
                .update({"status": HoldStatus.EXPIRED.value})
                .eq("status", HoldStatus.HELD.value)
                .lte("expires_at", now_iso(now))
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.expire_holds failed")
            raise LedgerError(str(e)) from e
        return len(res.data or [])

    # --- payment_reconciliations ---

    def create_reconciliation(
        self,
        booking: Dict[str, Any],
        *,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        row = {
            "booking_id": booking.get("id"),
            "stripe_payment_intent_id": booking.get("stripe_payment_intent_id"),
            "stripe_checkout_session_id": booking.get("stripe_checkout_session_id"),
            "reason": reason,
            "status": ReconciliationStatus.OPEN.value,
            "details": details or {},
        }
        try:
            res = self._table("payment_reconciliations").insert(row).execute()
        except StoreErrors as e:
            logger.exception("bookings.repository.create_reconciliation failed booking_id=%s", booking.get("id"))
            raise LedgerError(str(e)) from e
        rows = res.data or []
        return rows[0] if rows else row

    def list_open_reconciliations(self, limit: int) -> List[Dict[str, Any]]:
        try:
            res = (
                self._table("payment_reconciliations")
                .select("id, booking_id, stripe_payment_intent_id, stripe_checkout_session_id, reason, details, created_at")
                .eq("status", ReconciliationStatus.OPEN.value)
                .order("created_at")
                .limit(limit)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.list_open_reconciliations failed")
            raise LedgerError(str(e)) from e
        return res.data or []

    def resolve_reconciliation(self, reconciliation_id: str, details: Dict[str, Any]) -> None:
        try:
            (
                self._table("payment_reconciliations")
                .update({
                    "status": ReconciliationStatus.RESOLVED.value,
                    "details": details,
                    "resolved_at": now_iso(),
                })
                .eq("id", reconciliation_id)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.resolve_reconciliation failed id=%s", reconciliation_id)
            raise LedgerError(str(e)) from e

    def has_open_reconciliation(self, booking_id: str) -> bool:
        try:
            res = (
                self._table("payment_reconciliations")
                .select("id")
                .eq("booking_id", booking_id)
                .eq("status", ReconciliationStatus.OPEN.value)
                .limit(1)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.has_open_reconciliation failed booking_id=%s", booking_id)
            raise LedgerError(str(e)) from e
        return bool(res.data)

    def list_stale_captures(self, older_than: datetime, limit: int) -> List[Dict[str, Any]]:
        """Réservations restées CAPTURE_IN_PROGRESS (requête interrompue avant la réponse Stripe)."""
        try:
            res = (
                self._table("bookings")
                .select(BOOKING_COLUMNS)
                .eq("capture_status", CaptureStatus.CAPTURE_IN_PROGRESS.value)
                .lte("updated_at", older_than.isoformat())
                .limit(limit)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.list_stale_captures failed")
            raise LedgerError(str(e)) from e
        return res.data or []

    # --- profiles (comptes connectés des hôtes) ---

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            res = (
                self._table("profiles")
                .select("id, email, stripe_account_id, stripe_connected")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
        except StoreErrors as e:
            logger.exception("bookings.repository.get_profile failed user_id=%s", user_id)
            raise LedgerError(str(e)) from e
        rows = res.data or []
        return rows[0] if rows else None

    def update_profile(self, user_id: str, fields: Dict[str, Any]) -> None:
        try:
            self._table("profiles").update(fields).eq("id", user_id).execute()
        except StoreErrors as e:
            logger.exception("bookings.repository.update_profile failed user_id=%s", user_id)
            raise LedgerError(str(e)) from e

    def update_profile_by_account(self, account_id: str, fields: Dict[str, Any]) -> int:
        try:
            res = self._table("profiles").update(fields).eq("stripe_account_id", account_id).execute()
        except StoreErrors as e:
            logger.exception("bookings.repository.update_profile_by_account failed account_id=%s", account_id)
            raise LedgerError(str(e)) from e
        return len(res.data or [])

    # --- webhook_logs ---

    def record_webhook_event(self, stripe_id: str, event_type: str) -> bool:
        """True si l'événement est nouveau, False si déjà reçu (contrainte unique)."""
        try:
            self._table("webhook_logs").insert({"stripe_id": stripe_id, "type": event_type}).execute()
        except APIError as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION:
                return False
            logger.exception("bookings.repository.record_webhook_event failed stripe_id=%s", stripe_id)
            raise LedgerError(str(e)) from e
        except httpx.HTTPError as e:
            logger.exception("bookings.repository.record_webhook_event failed stripe_id=%s", stripe_id)
            raise LedgerError(str(e)) from e
        return True

    def forget_webhook_event(self, stripe_id: str) -> None:
        """Retire la trace d'un événement dont le traitement a échoué (Stripe le renverra)."""
        try:
            self._table("webhook_logs").delete().eq("stripe_id", stripe_id).execute()
        except StoreErrors:
            logger.exception("bookings.repository.forget_webhook_event failed stripe_id=%s", stripe_id)

    # --- santé ---

    def ping(self) -> None:
        self._table("classes").select("id").limit(1).execute()
