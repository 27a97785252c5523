import pytest
from fastapi import HTTPException

from herd.payments.service import confirm_booking
from herd.payments.stripe_client import GatewayError


@pytest.fixture
def paid_session(gateway):
    session = {
        "id": "cs_1",
        "status": "complete",
        "payment_status": "paid",
        "metadata": {"user_id": "guest-1", "class_id": "class-1"},
        "payment_intent": {"id": "pi_1", "metadata": {"user_id": "guest-1"}},
        "customer_details": {"email": "guest@example.com"},
    }
    gateway.sessions["cs_1"] = session
    return session


def test_confirm_before_webhook_returns_null_booking(paid_session, ledger, gateway):
    result = confirm_booking("cs_1", user_id="guest-1", ledger=ledger, gateway=gateway)
    assert result == {
        "ok": True,
        "session": {"id": "cs_1", "status": "complete", "payment_status": "paid", "customer_email": "guest@example.com"},
        "booking": None,
    }
    (call,) = gateway.called("retrieve_checkout_session")
    assert call[2]["expand"] == ["payment_intent", "customer"]


def test_confirm_returns_booking_row(paid_session, ledger, gateway):
    ledger.add_booking("b1", stripe_checkout_session_id="cs_1")
    result = confirm_booking("cs_1", user_id="guest-1", ledger=ledger, gateway=gateway)
    assert result["booking"]["id"] == "b1"
    assert ledger.bookings["b1"]["status"] == "PENDING"


def test_confirm_other_user_forbidden(paid_session, ledger, gateway):
    with pytest.raises(HTTPException) as exc:
        confirm_booking("cs_1", user_id="intruder", ledger=ledger, gateway=gateway)
    assert exc.value.status_code == 403


def test_conflicting_owner_metadata_forbidden(paid_session, ledger, gateway):
    paid_session["payment_intent"]["metadata"]["user_id"] = "someone-else"
    with pytest.raises(HTTPException) as exc:
        confirm_booking("cs_1", user_id="guest-1", ledger=ledger, gateway=gateway)
    assert exc.value.status_code == 403


def test_session_without_any_owner_forbidden(ledger, gateway):
    gateway.sessions["cs_2"] = {"id": "cs_2", "status": "open", "metadata": {}}
    with pytest.raises(HTTPException) as exc:
        confirm_booking("cs_2", user_id="guest-1", ledger=ledger, gateway=gateway)
    assert exc.value.status_code == 403


def test_unknown_session_is_404(ledger, gateway):
    with pytest.raises(HTTPException) as exc:
        confirm_booking("cs_missing", user_id="guest-1", ledger=ledger, gateway=gateway)
    assert exc.value.status_code == 404


def test_gateway_outage_is_500(ledger, gateway):
    gateway.errors["retrieve_checkout_session"] = GatewayError("timeout", code=None)
    with pytest.raises(HTTPException) as exc:
        confirm_booking("cs_1", user_id="guest-1", ledger=ledger, gateway=gateway)
    assert exc.value.status_code == 500


def test_missing_session_id(ledger, gateway):
    with pytest.raises(HTTPException) as exc:
        confirm_booking(None, user_id="guest-1", ledger=ledger, gateway=gateway)
    assert exc.value.status_code == 400
