"""
Adaptateur Stripe: centralise les appels et la configuration Stripe.

- Un seul `stripe.StripeClient` par clé secrète, version d'API épinglée (GatewayRegistry).
- Le registre est construit une fois au démarrage (lifespan) puis injecté: pas de stripe.api_key global.
- Toutes les erreurs SDK sont converties en GatewayError; les objets Stripe en dict simples.
"""
import logging
from threading import Lock
from typing import Any, Dict, List, Optional

import stripe

logger = logging.getLogger(__name__)

# Statuts PaymentIntent encore « autorisation seule » (pas de capture)
UNCAPTURED_INTENT_STATUSES = frozenset({
    "requires_capture",
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
})


class GatewayError(Exception):
    """Échec d'un appel Stripe (réseau, carte, requête invalide, signature...)."""

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


def to_plain(obj: Any) -> Dict[str, Any]:
    """Convertit un objet Stripe (ou un dict) en dict récursif."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def expandable_id(value: Any) -> Optional[str]:
    """Champ « expandable » Stripe: chaîne id ou objet développé {"id": ...}."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


def _wrap(op: str, exc: "stripe.StripeError") -> GatewayError:
    message = getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__
    code = getattr(exc, "code", None)
    logger.warning("payments.stripe.%s failed code=%s message=%s", op, code, message)
    return GatewayError(message, code=code)


class StripeGateway:
    """Capacités Stripe utilisées par le cycle de paiement des réservations."""

    def __init__(self, client: "stripe.StripeClient"):
        self._client = client

    # --- Checkout ---

    def create_checkout_session(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            session = self._client.v1.checkout.sessions.create(params=params)
        except stripe.StripeError as e:
            raise _wrap("create_checkout_session", e) from e
        return to_plain(session)

    def retrieve_checkout_session(self, session_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        params = {"expand": list(expand)} if expand else None
        try:
            session = self._client.v1.checkout.sessions.retrieve(session_id, params=params)
        except stripe.StripeError as e:
            raise _wrap("retrieve_checkout_session", e) from e
        return to_plain(session)

    # --- PaymentIntents ---

    def retrieve_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        try:
            pi = self._client.v1.payment_intents.retrieve(intent_id)
        except stripe.StripeError as e:
            raise _wrap("retrieve_payment_intent", e) from e
        return to_plain(pi)

    def capture_payment_intent(self, intent_id: str, *, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        options = {"idempotency_key": idempotency_key} if idempotency_key else None
        try:
            pi = self._client.v1.payment_intents.capture(intent_id, options=options)
        except stripe.StripeError as e:
            raise _wrap("capture_payment_intent", e) from e
        return to_plain(pi)

    def cancel_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        try:
            pi = self._client.v1.payment_intents.cancel(intent_id)
        except stripe.StripeError as e:
            raise _wrap("cancel_payment_intent", e) from e
        return to_plain(pi)

    # --- Refunds / Transfers ---

    def create_refund(self, intent_id: str, *, idempotency_key: str) -> Dict[str, Any]:
        try:
            refund = self._client.v1.refunds.create(
                params={"payment_intent": intent_id},
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise _wrap("create_refund", e) from e
        return to_plain(refund)

    def list_refunds(self, intent_id: str, limit: int = 1) -> List[Dict[str, Any]]:
        try:
            page = self._client.v1.refunds.list(params={"payment_intent": intent_id, "limit": limit})
        except stripe.StripeError as e:
            raise _wrap("list_refunds", e) from e
        return list(to_plain(page).get("data") or [])

    def create_transfer(self, params: Dict[str, Any], *, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        options = {"idempotency_key": idempotency_key} if idempotency_key else None
        try:
            transfer = self._client.v1.transfers.create(params=params, options=options)
        except stripe.StripeError as e:
            raise _wrap("create_transfer", e) from e
        return to_plain(transfer)

    # --- Comptes connectés (Connect) ---

    def create_connected_account(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            account = self._client.v1.accounts.create(params=params)
        except stripe.StripeError as e:
            raise _wrap("create_connected_account", e) from e
        return to_plain(account)

    def retrieve_connected_account(self, account_id: str) -> Dict[str, Any]:
        try:
            account = self._client.v1.accounts.retrieve(account_id)
        except stripe.StripeError as e:
            raise _wrap("retrieve_connected_account", e) from e
        return to_plain(account)

    def create_account_link(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            link = self._client.v1.account_links.create(params=params)
        except stripe.StripeError as e:
            raise _wrap("create_account_link", e) from e
        return to_plain(link)

    # --- Webhook ---

    def construct_event(self, payload: bytes, sig_header: Optional[str], secret: str) -> Dict[str, Any]:
        """Valide la signature Stripe-Signature et retourne l'événement en dict."""
        try:
            event = self._client.construct_event(payload, sig_header, secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning("payments.stripe.construct_event invalid signature: %s", e)
            raise GatewayError("Invalid signature", code="signature_verification_failed") from e
        return to_plain(event)


class GatewayRegistry:
    """
    Registre des clients Stripe: un client par clé secrète, version d'API épinglée.
    Initialisé au démarrage; les handlers reçoivent un StripeGateway via `get()`.
    """

    def __init__(self, api_version: str, *, max_network_retries: int = 2):
        self._api_version = api_version
        self._max_network_retries = max_network_retries
        self._gateways: Dict[str, StripeGateway] = {}
        self._lock = Lock()

    @property
    def api_version(self) -> str:
        return self._api_version

    def get(self, secret_key: str) -> StripeGateway:
        if not secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY manquant pour GatewayRegistry.get()")
        with self._lock:
            gateway = self._gateways.get(secret_key)
            if gateway is None:
                client = stripe.StripeClient(
                    secret_key,
                    stripe_version=self._api_version,
                    max_network_retries=self._max_network_retries,
                )
                gateway = StripeGateway(client)
                self._gateways[secret_key] = gateway
        return gateway

    def __len__(self) -> int:
        return len(self._gateways)
