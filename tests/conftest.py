import itertools
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient

from herd.app_setup.dependencies import get_gateway, get_ledger, get_outbox, get_settings
from herd.app_setup.factory import create_app
from herd.bookings.repository import LedgerError, now_iso
from herd.bookings.states import (
    BookingStatus,
    CaptureStatus,
    HoldStatus,
    PaymentStatus,
    ReconciliationStatus,
    allowed_prior_states,
    capture_status_of,
)
from herd.config import Settings
from herd.payments.stripe_client import GatewayError
from herd.utils.security import require_user


# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)


def _parse(ts: Any) -> Optional[datetime]:
    if not ts:
        return None
    if isinstance(ts, datetime):
        return ts
    dt = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class InMemoryLedger:
    """
    Double du BookingLedger: mêmes signatures, mêmes UPDATE conditionnels.
    - fail_on: noms de méthodes qui lèvent LedgerError
    - fail_capture_write: l'écriture capture_status=CAPTURED lève LedgerError
    - hooks: {nom_méthode: callable} exécuté avant l'opération (courses simulées)
    """

    def __init__(self):
        self.bookings: Dict[str, Dict[str, Any]] = {}
        self.classes: Dict[str, Dict[str, Any]] = {}
        self.holds: Dict[str, Dict[str, Any]] = {}
        self.reconciliations: Dict[str, Dict[str, Any]] = {}
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.webhook_events: Dict[str, str] = {}
        self.spots: Dict[str, int] = {}
        self.fail_on = set()
        self.fail_capture_write = False
        self.hooks: Dict[str, Any] = {}
        self._ids = itertools.count(1)

    # --- helpers de test ---

    def _next(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _check(self, name: str) -> None:
        hook = self.hooks.pop(name, None)
        if hook:
            hook()
        if name in self.fail_on:
            raise LedgerError(f"simulated failure in {name}")

    def add_class(self, class_id: str = "class-1", **fields) -> Dict[str, Any]:
        row = {
            "id": class_id,
            "title": "Pottery basics",
            "host_id": "host-1",
            "price_per_person_cents": 10000,
            "auto_approve": False,
            "start_date": "2020-01-10",
            "end_date": None,
            "start_time": "10:00:00",
            "hours_per_day": 2,
            "number_of_days": 1,
        }
        row.update(fields)
        self.classes[class_id] = row
        self.spots.setdefault(class_id, 10)
        return row

    def add_booking(self, booking_id: str = "booking-1", **fields) -> Dict[str, Any]:
        row = {
            "id": booking_id,
            "user_id": "guest-1",
            "class_id": "class-1",
            "qty": 1,
            "student_names": [],
            "status": BookingStatus.PENDING.value,
            "payment_status": PaymentStatus.UNPAID.value,
            "capture_status": CaptureStatus.NONE.value,
            "capture_attempt_count": 0,
            "capture_last_error": None,
            "total_cents": 11500,
            "platform_fee_cents": None,
            "host_payout_cents": None,
            "stripe_checkout_session_id": f"cs_{booking_id}",
            "stripe_payment_intent_id": f"pi_{booking_id}",
            "stripe_charge_id": None,
            "stripe_transfer_id": None,
            "stripe_refund_id": None,
            "review_allowed": False,
            "created_at": now_iso(),
            "updated_at": now_iso(),
        }
        row.update(fields)
        self.bookings[booking_id] = row
        return row

    def add_profile(self, user_id: str = "host-1", **fields) -> Dict[str, Any]:
        row = {"id": user_id, "email": f"{user_id}@example.com", "stripe_account_id": None, "stripe_connected": False}
        row.update(fields)
        self.profiles[user_id] = row
        return row

    def open_records(self) -> List[Dict[str, Any]]:
        return [r for r in self.reconciliations.values() if r["status"] == ReconciliationStatus.OPEN.value]

    # --- bookings ---

    def get_booking(self, booking_id):
        self._check("get_booking")
        row = self.bookings.get(booking_id)
        return dict(row) if row else None

    def get_booking_by_session(self, session_id):
        self._check("get_booking_by_session")
        for row in self.bookings.values():
            if row.get("stripe_checkout_session_id") == session_id:
                return dict(row)
        return None

    def insert_booking(self, row):
        self._check("insert_booking")
        booking_id = self._next("booking")
        stored = {"id": booking_id, "created_at": now_iso(), "updated_at": now_iso(), "review_allowed": False, **row}
        self.bookings[booking_id] = stored
        return dict(stored)

    def update_booking(self, booking_id, fields):
        self._check("update_booking")
        row = self.bookings.get(booking_id)
        if row is None:
            return None
        row.update(fields, updated_at=now_iso())
        return dict(row)

    def transition_capture(self, booking_id, target, fields=None, *, expected=None):
        self._check("transition_capture")
        if target == CaptureStatus.CAPTURED and self.fail_capture_write:
            raise LedgerError("simulated failure writing CAPTURED")
        prior = frozenset(expected) if expected is not None else allowed_prior_states(target)
        row = self.bookings.get(booking_id)
        if row is None or capture_status_of(row) not in prior:
            return None
        row.update(fields or {})
        row["capture_status"] = target.value
        row["updated_at"] = now_iso()
        return dict(row)

    def deny_pending(self, booking_id, fields):
        self._check("deny_pending")
        row = self.bookings.get(booking_id)
        if (
            row is None
            or row.get("status") != BookingStatus.PENDING.value
            or capture_status_of(row) not in {CaptureStatus.NONE, CaptureStatus.CAPTURE_FAILED}
        ):
            return None
        row.update(fields, status=BookingStatus.DENIED.value, updated_at=now_iso())
        return dict(row)

    def list_pending_bookings(self, limit):
        self._check("list_pending_bookings")
        rows = sorted(
            (r for r in self.bookings.values() if r.get("status") == BookingStatus.PENDING.value),
            key=lambda r: r.get("created_at") or "",
        )
        out = []
        for r in rows[:limit]:
            cls = self.classes.get(r.get("class_id")) or {}
            schedule = {k: cls.get(k) for k in ("start_date", "end_date", "start_time", "hours_per_day", "number_of_days")}
            out.append({**r, "classes": schedule})
        return out

    def mark_paid_out(self, booking_id, transfer_id, paid_at=None):
        self._check("mark_paid_out")
        row = self.bookings.get(booking_id)
        if row is None or row.get("payment_status") != PaymentStatus.HELD.value:
            return None
        row.update(
            payment_status=PaymentStatus.COMPLETED.value,
            stripe_transfer_id=transfer_id,
            paid_out_at=now_iso(paid_at),
            updated_at=now_iso(),
        )
        return dict(row)

    def unlock_reviews(self, booking_ids):
        self._check("unlock_reviews")
        count = 0
        for booking_id in booking_ids:
            row = self.bookings.get(booking_id)
            if row is not None and not row.get("review_allowed"):
                row["review_allowed"] = True
                count += 1
        return count

    def due_payouts(self, buffer_hours):
        """Comme la fonction SQL herd_due_payouts: réservations HELD + CAPTURED avec hôte connecté."""
        self._check("due_payouts")
        out = []
        for r in sorted(self.bookings.values(), key=lambda r: r.get("created_at") or ""):
            if r.get("payment_status") != PaymentStatus.HELD.value or capture_status_of(r) != CaptureStatus.CAPTURED:
                continue
            cls = self.classes.get(r.get("class_id")) or {}
            host = self.profiles.get(cls.get("host_id")) or {}
            out.append({
                "id": r["id"],
                "class_id": r.get("class_id"),
                "host_payout_cents": r.get("host_payout_cents"),
                "stripe_charge_id": r.get("stripe_charge_id"),
                "host_stripe_account_id": host.get("stripe_account_id"),
                "class_end_date": cls.get("end_date") or cls.get("start_date"),
            })
        return out

    # --- classes ---

    def get_class(self, class_id):
        self._check("get_class")
        row = self.classes.get(class_id)
        return dict(row) if row else None

    def available_spots(self, class_id):
        self._check("available_spots")
        return self.spots.get(class_id, 0)

    # --- booking_holds ---

    def create_hold(self, *, class_id, guest_id, quantity, expires_at):
        self._check("create_hold")
        hold_id = self._next("hold")
        self.holds[hold_id] = {
            "id": hold_id,
            "class_id": class_id,
            "guest_id": guest_id,
            "quantity": quantity,
            "status": HoldStatus.HELD.value,
            "expires_at": expires_at.isoformat(),
            "stripe_checkout_session_id": None,
        }
        return dict(self.holds[hold_id])

    def attach_hold_session(self, hold_id, session_id):
        self._check("attach_hold_session")
        self.holds[hold_id]["stripe_checkout_session_id"] = session_id

    def cancel_hold(self, hold_id):
        hold = self.holds.get(hold_id)
        if hold and hold["status"] == HoldStatus.HELD.value:
            hold["status"] = HoldStatus.CANCELLED.value

    def consume_hold(self, session_id, now=None):
        self._check("consume_hold")
        now = now or datetime.now(timezone.utc)
        for hold in self.holds.values():
            if (
                hold.get("stripe_checkout_session_id") == session_id
                and hold["status"] == HoldStatus.HELD.value
                and _parse(hold["expires_at"]) > now
            ):
                hold["status"] = HoldStatus.CONSUMED.value
                return dict(hold)
        return None

    def get_hold_by_session(self, session_id):
        for hold in self.holds.values():
            if hold.get("stripe_checkout_session_id") == session_id:
                return dict(hold)
        return None

    def expire_holds(self, now=None):
        self._check("expire_holds")
        now = now or datetime.now(timezone.utc)
        count = 0
        for hold in self.holds.values():
            if hold["status"] == HoldStatus.HELD.value and _parse(hold["expires_at"]) <= now:
                hold["status"] = HoldStatus.EXPIRED.value
                count += 1
        return count

    # --- payment_reconciliations ---

    def create_reconciliation(self, booking, *, reason, details=None):
        self._check("create_reconciliation")
        record_id = self._next("recon")
        self.reconciliations[record_id] = {
            "id": record_id,
            "booking_id": booking.get("id"),
            "stripe_payment_intent_id": booking.get("stripe_payment_intent_id"),
            "stripe_checkout_session_id": booking.get("stripe_checkout_session_id"),
            "reason": reason,
            "status": ReconciliationStatus.OPEN.value,
            "details": dict(details or {}),
            "created_at": now_iso(),
        }
        return dict(self.reconciliations[record_id])

    def list_open_reconciliations(self, limit):
        self._check("list_open_reconciliations")
        return [dict(r) for r in self.open_records()[:limit]]

    def resolve_reconciliation(self, reconciliation_id, details):
        self._check("resolve_reconciliation")
        record = self.reconciliations[reconciliation_id]
        record.update(status=ReconciliationStatus.RESOLVED.value, details=details, resolved_at=now_iso())

    def has_open_reconciliation(self, booking_id):
        return any(r["booking_id"] == booking_id for r in self.open_records())

    def list_stale_captures(self, older_than, limit):
        self._check("list_stale_captures")
        rows = [
            dict(r)
            for r in self.bookings.values()
            if capture_status_of(r) == CaptureStatus.CAPTURE_IN_PROGRESS and _parse(r.get("updated_at")) <= older_than
        ]
        return rows[:limit]

    # --- profiles ---

    def get_profile(self, user_id):
        row = self.profiles.get(user_id)
        return dict(row) if row else None

    def update_profile(self, user_id, fields):
        self.profiles.setdefault(user_id, {"id": user_id}).update(fields)

    def update_profile_by_account(self, account_id, fields):
        count = 0
        for row in self.profiles.values():
            if row.get("stripe_account_id") == account_id:
                row.update(fields)
                count += 1
        return count

    # --- webhook_logs ---

    def record_webhook_event(self, stripe_id, event_type):
        self._check("record_webhook_event")
        if stripe_id in self.webhook_events:
            return False
        self.webhook_events[stripe_id] = event_type
        return True

    def forget_webhook_event(self, stripe_id):
        self.webhook_events.pop(stripe_id, None)

    def ping(self):
        return None


class FakeGateway:
    """
    Double du StripeGateway: PaymentIntents en mémoire, journal des appels,
    idempotence des captures/remboursements/transferts par clé.
    - errors: {nom_méthode: GatewayError} levée à l'appel
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.refunds: Dict[str, List[Dict[str, Any]]] = {}
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.errors: Dict[str, GatewayError] = {}
        self._by_key: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)

    def _record(self, name: str, *args, **kwargs) -> None:
        self.calls.append((name, args, kwargs))
        err = self.errors.get(name)
        if err is not None:
            raise err

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    def add_intent(self, intent_id: str, status: str = "requires_capture", amount: int = 11500, **fields) -> Dict[str, Any]:
        pi = {"id": intent_id, "status": status, "amount": amount, "amount_received": 0, "latest_charge": None, "metadata": {}}
        if status == "succeeded":
            pi.update(amount_received=amount, latest_charge=f"ch_{intent_id}")
        pi.update(fields)
        self.intents[intent_id] = pi
        return pi

    def _intent(self, intent_id: str) -> Dict[str, Any]:
        if intent_id not in self.intents:
            raise GatewayError(f"No such payment_intent: '{intent_id}'", code="resource_missing")
        return self.intents[intent_id]

    def create_checkout_session(self, params):
        self._record("create_checkout_session", params)
        session_id = f"cs_test_{next(self._ids)}"
        session = {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}", "status": "open", **params}
        self.sessions[session_id] = session
        return dict(session)

    def retrieve_checkout_session(self, session_id, expand=None):
        self._record("retrieve_checkout_session", session_id, expand=expand)
        if session_id not in self.sessions:
            raise GatewayError(f"No such checkout.session: '{session_id}'", code="resource_missing")
        return dict(self.sessions[session_id])

    def retrieve_payment_intent(self, intent_id):
        self._record("retrieve_payment_intent", intent_id)
        return dict(self._intent(intent_id))

    def capture_payment_intent(self, intent_id, *, idempotency_key=None):
        self._record("capture_payment_intent", intent_id, idempotency_key=idempotency_key)
        if idempotency_key in self._by_key:
            return dict(self._by_key[idempotency_key])
        pi = self._intent(intent_id)
        if pi["status"] != "requires_capture":
            raise GatewayError("This PaymentIntent could not be captured", code="payment_intent_unexpected_state")
        pi.update(status="succeeded", amount_received=pi["amount"], latest_charge=f"ch_{intent_id}")
        if idempotency_key:
            self._by_key[idempotency_key] = dict(pi)
        return dict(pi)

    def cancel_payment_intent(self, intent_id):
        self._record("cancel_payment_intent", intent_id)
        pi = self._intent(intent_id)
        pi["status"] = "canceled"
        return dict(pi)

    def create_refund(self, intent_id, *, idempotency_key):
        self._record("create_refund", intent_id, idempotency_key=idempotency_key)
        if idempotency_key in self._by_key:
            return dict(self._by_key[idempotency_key])
        refund = {"id": f"re_{next(self._ids)}", "payment_intent": intent_id, "status": "succeeded"}
        self.refunds.setdefault(intent_id, []).append(refund)
        self._by_key[idempotency_key] = refund
        return dict(refund)

    def list_refunds(self, intent_id, limit=1):
        self._record("list_refunds", intent_id, limit=limit)
        return [dict(r) for r in self.refunds.get(intent_id, [])[:limit]]

    def create_transfer(self, params, *, idempotency_key=None):
        self._record("create_transfer", params, idempotency_key=idempotency_key)
        if idempotency_key in self._by_key:
            return dict(self._by_key[idempotency_key])
        transfer = {"id": f"tr_{next(self._ids)}", **params}
        if idempotency_key:
            self._by_key[idempotency_key] = transfer
        return dict(transfer)

    def create_connected_account(self, params):
        self._record("create_connected_account", params)
        account = {"id": f"acct_{next(self._ids)}", "details_submitted": False, **params}
        self.accounts[account["id"]] = account
        return dict(account)

    def retrieve_connected_account(self, account_id):
        self._record("retrieve_connected_account", account_id)
        return dict(self.accounts.get(account_id) or {"id": account_id, "details_submitted": True})

    def create_account_link(self, params):
        self._record("create_account_link", params)
        return {"url": f"https://connect.stripe.test/setup/{params['account']}", "object": "account_link"}

    def construct_event(self, payload, sig_header, secret):
        self._record("construct_event", sig_header=sig_header)
        if sig_header != "t=1,v1=valid":
            raise GatewayError("Invalid signature", code="signature_verification_failed")
        return json.loads(payload)


class FakeOutbox:
    def __init__(self):
        self.submitted: List[Dict[str, Any]] = []

    def submit(self, booking_id, kind, *, to_email=None, subject=None, variables=None):
        self.submitted.append({"booking_id": booking_id, "kind": kind, "variables": variables})
        return True

    def kinds(self) -> List[str]:
        return [s["kind"].name for s in self.submitted]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_service_key="service-role-key",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
        cron_secret="cron-secret",
        fee_rate=Decimal("0.15"),
        site_url="https://herd.test",
    )


@pytest.fixture
def ledger() -> InMemoryLedger:
    store = InMemoryLedger()
    store.add_class()
    store.add_profile("host-1", stripe_account_id="acct_host1", stripe_connected=True)
    return store


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def outbox() -> FakeOutbox:
    return FakeOutbox()


@pytest.fixture
def current_user() -> Dict[str, Any]:
    """Utilisateur renvoyé par require_user; les tests peuvent modifier 'id'."""
    return {"id": "guest-1", "email": "guest@example.com", "metadata": {}, "token": "fake-token"}


@pytest.fixture
def app(settings, ledger, gateway, outbox, current_user):
    application = create_app(settings)
    application.state.ledger = ledger
    application.dependency_overrides[get_settings] = lambda: settings
    application.dependency_overrides[get_ledger] = lambda: ledger
    application.dependency_overrides[get_gateway] = lambda: gateway
    application.dependency_overrides[get_outbox] = lambda: outbox
    application.dependency_overrides[require_user] = lambda: current_user
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    # Sans bloc `with`: le lifespan (Supabase, Stripe, Redis réels) n'est pas exécuté
    yield TestClient(app)


@pytest.fixture
def cron_headers() -> Dict[str, str]:
    return {"x-cron-secret": "cron-secret"}
