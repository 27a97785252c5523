"""
Module 'payments' (feature-first): point d'entrée public.
Réunit tarification, metadata Stripe, passerelle Stripe, checkout, webhook et onboarding Connect.
"""

from .pricing import FeeSplit, fee_split, normalize_to_cents, per_seat_cents, estimate_gateway_fee
from .metadata import make_metadata, extract_metadata_from_session, transfer_group_for
from .stripe_client import GatewayError, GatewayRegistry, StripeGateway
from .service import create_checkout_session, confirm_booking
from .webhook import handle_webhook_event
from .connect import start_connect_onboarding

__all__ = [
    # pricing
    "FeeSplit",
    "fee_split",
    "normalize_to_cents",
    "per_seat_cents",
    "estimate_gateway_fee",
    # metadata
    "make_metadata",
    "extract_metadata_from_session",
    "transfer_group_for",
    # stripe
    "GatewayError",
    "GatewayRegistry",
    "StripeGateway",
    # services
    "create_checkout_session",
    "confirm_booking",
    "handle_webhook_event",
    "start_connect_onboarding",
]
