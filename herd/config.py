# herd.config
"""
Configuration centrale du service de paiements HERD.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise les secrets/URLs (Supabase, Stripe), le taux de commission, les fenêtres de temps
- Construit un objet `Settings` immuable, créé une seule fois au démarrage (lifespan)
  puis passé explicitement aux composants: aucune lecture d'env dans la logique métier.
"""
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

DEFAULT_FEE_RATE = Decimal("0.15")
DEFAULT_STRIPE_API_VERSION = "2024-06-20"

# Balayage des réservations en attente: limite par défaut / plafond
PENDING_SWEEP_DEFAULT_LIMIT = 500
PENDING_SWEEP_MAX_LIMIT = 1000

# Estimation des frais Stripe (2.9% + 30 cents)
GATEWAY_FEE_PERCENT = Decimal("0.029")
GATEWAY_FEE_FIXED_CENTS = 30


def _clean_env(v: Optional[str]) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")


def _env(*names: str, default: str = "") -> str:
    # Première variable non vide parmi les alias
    for name in names:
        value = _clean_env(os.getenv(name))
        if value:
            return value
    return default


def _int_env(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("config.invalid_int name=%s value=%r default=%s", name, raw, default)
        return default
    if value < 0:
        logger.warning("config.negative_int name=%s value=%s default=%s", name, value, default)
        return default
    return value


def _decimal_env(name: str, default: Decimal) -> Decimal:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        logger.warning("config.invalid_decimal name=%s value=%r default=%s", name, raw, default)
        return default
    if not value.is_finite() or value < 0:
        logger.warning("config.invalid_decimal name=%s value=%r default=%s", name, raw, default)
        return default
    return value


def _list_env(name: str, default: str) -> Tuple[str, ...]:
    return tuple(x.strip() for x in (os.getenv(name) or default).split(",") if x.strip())


def _normalize_supabase_url(url: str) -> str:
    # SUPABASE_URL peut parfois être sans schéma: on préfixe en https://
    if url and not url.startswith("http"):
        url = "https://" + url
    return url.rstrip("/")


@dataclass(frozen=True)
class Settings:
    """Paramètres du service, figés au démarrage."""

    supabase_url: str
    supabase_service_key: str
    stripe_secret_key: str
    supabase_anon_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_version: str = DEFAULT_STRIPE_API_VERSION
    cron_secret: str = ""
    fee_rate: Decimal = DEFAULT_FEE_RATE
    currency: str = "usd"
    site_url: str = "http://localhost:5173"
    success_url: str = ""
    cancel_url: str = ""
    hold_ttl_minutes: int = 15
    payout_buffer_hours: int = 24
    review_unlock_hours: int = 24
    pending_sweep_default_limit: int = PENDING_SWEEP_DEFAULT_LIMIT
    pending_sweep_max_limit: int = PENDING_SWEEP_MAX_LIMIT
    reconcile_batch_limit: int = 100
    gateway_fee_percent: Decimal = GATEWAY_FEE_PERCENT
    gateway_fee_fixed_cents: int = GATEWAY_FEE_FIXED_CENTS
    cors_origins: Tuple[str, ...] = field(default=("*",))
    allowed_hosts: Tuple[str, ...] = field(default=("*",))
    rate_limit_redis_url: str = "redis://127.0.0.1:6379/0"

    @property
    def checkout_success_url(self) -> str:
        base = self.success_url or f"{self.site_url.rstrip('/')}/classes/checkout/success"
        return f"{base}?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def checkout_cancel_url(self) -> str:
        return self.cancel_url or f"{self.site_url.rstrip('/')}/classes/checkout/cancel"

    def missing(self) -> List[str]:
        """Variables obligatoires absentes (noms d'env)."""
        out = []
        if not self.stripe_secret_key:
            out.append("STRIPE_SECRET_KEY")
        if not self.supabase_url:
            out.append("SUPABASE_URL")
        if not self.supabase_service_key:
            out.append("SUPABASE_SERVICE_ROLE_KEY")
        return out


def load_settings(env_path: Path = ENV_PATH, *, strict: bool = True) -> Settings:
    """
    Lit l'environnement (après chargement du .env) et construit `Settings`.
    - strict=True: lève RuntimeError si une variable obligatoire manque (refus de démarrer)
    """
    load_dotenv(dotenv_path=env_path, override=False)

    settings = Settings(
        supabase_url=_normalize_supabase_url(_env("SUPABASE_URL")),
        supabase_service_key=_env("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_KEY"),
        supabase_anon_key=_env("SUPABASE_ANON_KEY"),
        stripe_secret_key=_env("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
        stripe_api_version=_env("STRIPE_API_VERSION", default=DEFAULT_STRIPE_API_VERSION),
        cron_secret=_env("CRON_SECRET"),
        fee_rate=_decimal_env("HERD_FEE_RATE", DEFAULT_FEE_RATE),
        currency=_env("HERD_CURRENCY", default="usd").lower(),
        site_url=_env("SITE_URL", default="http://localhost:5173"),
        success_url=_env("STRIPE_SUCCESS_URL"),
        cancel_url=_env("STRIPE_CANCEL_URL"),
        hold_ttl_minutes=_int_env("BOOKING_HOLD_TTL_MINUTES", 15),
        payout_buffer_hours=_int_env("PAYOUT_BUFFER_HOURS", 24),
        review_unlock_hours=_int_env("REVIEW_UNLOCK_HOURS", 24),
        reconcile_batch_limit=_int_env("RECONCILE_BATCH_LIMIT", 100) or 100,
        cors_origins=_list_env("CORS_ORIGINS", "*"),
        allowed_hosts=_list_env("ALLOWED_HOSTS", "*"),
        rate_limit_redis_url=_env("RATE_LIMIT_REDIS_URL", default="redis://127.0.0.1:6379/0"),
    )

    missing = settings.missing()
    if missing and strict:
        raise RuntimeError("Configuration incomplète: " + ", ".join(missing))
    return settings
