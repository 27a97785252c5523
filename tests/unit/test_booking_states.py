import pytest

from herd.bookings.states import (
    CaptureStatus,
    InvalidTransition,
    allowed_prior_states,
    assert_capture_transition,
    can_transition,
    capture_status_of,
    is_terminal,
)


def test_capture_gate_priors():
    assert allowed_prior_states(CaptureStatus.CAPTURE_IN_PROGRESS) == {
        CaptureStatus.NONE,
        CaptureStatus.CAPTURE_FAILED,
        CaptureStatus.NEEDS_RECONCILE,
    }


def test_captured_reachable_from_in_progress_and_reconcile_only():
    assert allowed_prior_states(CaptureStatus.CAPTURED) == {
        CaptureStatus.CAPTURE_IN_PROGRESS,
        CaptureStatus.NEEDS_RECONCILE,
    }


@pytest.mark.parametrize("target", list(CaptureStatus))
def test_captured_is_final(target):
    assert can_transition(CaptureStatus.CAPTURED, target) is False


def test_none_cannot_jump_to_captured():
    with pytest.raises(InvalidTransition) as exc:
        assert_capture_transition(CaptureStatus.NONE, CaptureStatus.CAPTURED)
    assert exc.value.current is CaptureStatus.NONE
    assert "NONE -> CAPTURED" in str(exc.value)


def test_in_progress_outcomes_allowed():
    for target in (CaptureStatus.CAPTURED, CaptureStatus.CAPTURE_FAILED, CaptureStatus.NEEDS_RECONCILE):
        assert_capture_transition(CaptureStatus.CAPTURE_IN_PROGRESS, target)


@pytest.mark.parametrize(
    "row,expected",
    [
        ({"capture_status": None}, CaptureStatus.NONE),
        ({}, CaptureStatus.NONE),
        (None, CaptureStatus.NONE),
        ({"capture_status": "bogus"}, CaptureStatus.NONE),
        ({"capture_status": "CAPTURED"}, CaptureStatus.CAPTURED),
    ],
)
def test_capture_status_of(row, expected):
    assert capture_status_of(row) is expected


def test_is_terminal():
    assert is_terminal({"status": "DENIED", "payment_status": "FAILED"})
    assert is_terminal({"status": "CANCELLED"})
    assert is_terminal({"status": "PENDING", "payment_status": "REFUNDED"})
    assert not is_terminal({"status": "APPROVED", "payment_status": "HELD"})
