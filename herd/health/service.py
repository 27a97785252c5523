import logging
from typing import Any, Dict, Optional

from herd.bookings.repository import BookingLedger, StoreErrors

logger = logging.getLogger(__name__)


def health_supabase_info(ledger: Optional[BookingLedger]) -> Dict[str, Any]:
    """Sonde légère: un SELECT limité sur `classes` via le client service-role."""
    if ledger is None:
        return {"configured": False, "connect_ok": False}
    try:
        ledger.ping()
    except StoreErrors as e:
        logger.warning("health.supabase ping failed: %s", e)
        return {"configured": True, "connect_ok": False, "error": str(e)[:200]}
    return {"configured": True, "connect_ok": True}
