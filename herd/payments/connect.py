"""
Onboarding Stripe Connect des hôtes (compte Express, destinataire des versements).
"""
import logging
from typing import Any, Dict

from fastapi import HTTPException

from herd.bookings.repository import BookingLedger
from herd.config import Settings

from .stripe_client import GatewayError, StripeGateway

logger = logging.getLogger(__name__)


def start_connect_onboarding(
    user: Dict[str, Any],
    *,
    ledger: BookingLedger,
    gateway: StripeGateway,
    settings: Settings,
) -> Dict[str, Any]:
    """Réutilise (ou crée) le compte connecté de l'hôte et renvoie un lien d'onboarding."""
    user_id = str(user.get("id") or "")
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")

    profile = ledger.get_profile(user_id) or {}
    account_id = profile.get("stripe_account_id")
    site = settings.site_url.rstrip("/")
    try:
        if account_id:
            account = gateway.retrieve_connected_account(account_id)
        else:
            params: Dict[str, Any] = {
                "type": "express",
                "metadata": {"supabase_user_id": user_id},
                "capabilities": {"transfers": {"requested": True}},
            }
            email = user.get("email") or profile.get("email")
            if email:
                params["email"] = email
            account = gateway.create_connected_account(params)
            account_id = account.get("id")
            ledger.update_profile(user_id, {"stripe_account_id": account_id})
            logger.info("payments.connect account created user_id=%s account=%s", user_id, account_id)

        link = gateway.create_account_link({
            "account": account_id,
            "refresh_url": f"{site}/profile",
            "return_url": f"{site}/onboarding/complete",
            "type": "account_onboarding",
        })
    except GatewayError as e:
        raise HTTPException(status_code=500, detail=e.message or "Stripe Connect onboarding failed")

    ledger.update_profile(user_id, {"stripe_connected": bool(account.get("details_submitted"))})
    return {"url": link.get("url"), "accountId": account_id}
