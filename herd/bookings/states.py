"""
Machine à états d'une réservation: trois axes indépendants (cycle de vie, fonds, capture)
et table des transitions de capture utilisée pour les mises à jour conditionnelles.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    HELD = "HELD"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    COMPLETED = "COMPLETED"


class CaptureStatus(str, Enum):
    NONE = "NONE"
    CAPTURE_IN_PROGRESS = "CAPTURE_IN_PROGRESS"
    CAPTURED = "CAPTURED"
    CAPTURE_FAILED = "CAPTURE_FAILED"
    NEEDS_RECONCILE = "NEEDS_RECONCILE"


class HoldStatus(str, Enum):
    HELD = "HELD"
    CONSUMED = "CONSUMED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class ReconciliationStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


TERMINAL_BOOKING_STATUSES = frozenset({BookingStatus.DENIED, BookingStatus.CANCELLED})
APPROVABLE_BOOKING_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.APPROVED})
CAPTURED_PAYMENT_STATUSES = frozenset({PaymentStatus.HELD, PaymentStatus.PAID, PaymentStatus.COMPLETED})

# état courant -> états suivants autorisés
CAPTURE_TRANSITIONS: Dict[CaptureStatus, FrozenSet[CaptureStatus]] = {
    CaptureStatus.NONE: frozenset({CaptureStatus.CAPTURE_IN_PROGRESS}),
    CaptureStatus.CAPTURE_FAILED: frozenset({CaptureStatus.CAPTURE_IN_PROGRESS}),
    CaptureStatus.NEEDS_RECONCILE: frozenset({
        CaptureStatus.CAPTURE_IN_PROGRESS,
        CaptureStatus.CAPTURED,
        CaptureStatus.CAPTURE_FAILED,
    }),
    CaptureStatus.CAPTURE_IN_PROGRESS: frozenset({
        CaptureStatus.CAPTURED,
        CaptureStatus.CAPTURE_FAILED,
        CaptureStatus.NEEDS_RECONCILE,
    }),
    CaptureStatus.CAPTURED: frozenset(),
}


class InvalidTransition(Exception):
    def __init__(self, current: CaptureStatus, target: CaptureStatus):
        super().__init__(f"Invalid capture transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def allowed_prior_states(target: CaptureStatus) -> FrozenSet[CaptureStatus]:
    """Ensemble des états depuis lesquels `target` est atteignable."""
    return frozenset(src for src, dests in CAPTURE_TRANSITIONS.items() if target in dests)


def can_transition(current: CaptureStatus, target: CaptureStatus) -> bool:
    return target in CAPTURE_TRANSITIONS.get(current, frozenset())


def assert_capture_transition(current: CaptureStatus, target: CaptureStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)


def capture_status_of(row: Optional[dict]) -> CaptureStatus:
    """Statut de capture d'une ligne (NULL en base == NONE)."""
    raw = (row or {}).get("capture_status")
    if not raw:
        return CaptureStatus.NONE
    try:
        return CaptureStatus(raw)
    except ValueError:
        return CaptureStatus.NONE


def is_terminal(row: dict) -> bool:
    """Réservation close: refusée/annulée ou remboursée."""
    return (
        row.get("status") in {s.value for s in TERMINAL_BOOKING_STATUSES}
        or row.get("payment_status") == PaymentStatus.REFUNDED.value
    )
