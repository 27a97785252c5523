"""
Lifespan FastAPI: initialisation/arrêt des ressources partagées.
- Settings (refus de démarrer si la configuration obligatoire manque)
- client Supabase service-role -> BookingLedger + NotificationOutbox
- GatewayRegistry Stripe (un client par clé, version d'API épinglée)
- FastAPILimiter (Redis, ou fakeredis en tests)
Variables d’environnement supportées:
  - DISABLE_RATE_LIMIT_INIT_FOR_TESTS=1: désactive complètement le rate limiting (tests)
  - USE_FAKE_REDIS_FOR_TESTS=1: utilise fakeredis (tests)
  - LOCAL_RATE_LIMIT_FALLBACK=1: compteur mémoire si Redis est indisponible
Les ressources déjà présentes dans app.state (posées par un test) sont conservées.
"""
import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter
from redis.exceptions import RedisError

from herd.bookings.repository import BookingLedger
from herd.config import Settings, load_settings
from herd.infra.supabase_client import create_auth_client, create_service_client
from herd.notifications.outbox import NotificationOutbox
from herd.payments.stripe_client import GatewayRegistry


async def _init_rate_limit(app: FastAPI, settings: Settings, logger: logging.Logger) -> None:
    if os.getenv("DISABLE_RATE_LIMIT_INIT_FOR_TESTS") == "1":
        app.state.rate_limit_enabled = False
        logger.info("Rate limiting disabled by DISABLE_RATE_LIMIT_INIT_FOR_TESTS")
        return
    try:
        if os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1":
            try:
                from fakeredis import FakeAsyncRedis  # tests only
            except ImportError as e:
                raise RuntimeError("USE_FAKE_REDIS_FOR_TESTS=1 mais fakeredis n'est pas installé.") from e
            r = FakeAsyncRedis(decode_responses=True)
        else:
            r = aioredis.from_url(settings.rate_limit_redis_url, encoding="utf-8", decode_responses=True)
        await FastAPILimiter.init(r)
        app.state.rate_limit_enabled = True
        logger.info("Rate limiting enabled")
    except (RedisError, OSError, RuntimeError) as e:
        FastAPILimiter.redis = None
        if os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1":
            app.state.rate_limit_enabled = True
            logger.warning("Rate limiting falling back to local in-memory due to init error: %s", e)
        else:
            app.state.rate_limit_enabled = False
            logger.warning("Rate limiting disabled due to init error: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("uvicorn.error")

    settings = getattr(app.state, "settings", None)
    if settings is None:
        settings = load_settings()
        app.state.settings = settings
    elif settings.missing():
        raise RuntimeError("Configuration incomplète: " + ", ".join(settings.missing()))

    if getattr(app.state, "ledger", None) is None or getattr(app.state, "outbox", None) is None:
        service = create_service_client(settings)
        app.state.ledger = BookingLedger(service)
        app.state.outbox = NotificationOutbox(service)
    if getattr(app.state, "auth_supabase", None) is None:
        app.state.auth_supabase = create_auth_client(settings)
    if getattr(app.state, "gateways", None) is None:
        registry = GatewayRegistry(settings.stripe_api_version)
        registry.get(settings.stripe_secret_key)
        app.state.gateways = registry

    await _init_rate_limit(app, settings, logger)
    logger.info(
        "HERD payments ready (stripe_api_version=%s fee_rate=%s payout_buffer_hours=%s)",
        settings.stripe_api_version,
        settings.fee_rate,
        settings.payout_buffer_hours,
    )
    try:
        yield
    finally:
        if FastAPILimiter.redis is not None:
            await FastAPILimiter.close()
            FastAPILimiter.redis = None
