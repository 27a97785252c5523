import hashlib
import logging
import os
import time
from typing import Any, Dict
from urllib.parse import urlparse

from fastapi import HTTPException, Request, Response
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter
from redis.exceptions import RedisError

from herd.utils.security import extract_bearer

logger = logging.getLogger(__name__)


def _user_key_from_request(req: Request) -> str:
    # Priorité: jeton Bearer (hashé) puis IP
    token = extract_bearer(req)
    path = req.url.path
    if token:
        h = hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
        return f"user:{h}:{path}"
    ip = req.client.host if req.client else "local"
    return f"ip:{ip}:{path}"


async def _identifier(req: Request) -> str:
    return _user_key_from_request(req)


def _memory_hit(request: Request, key: str, times: int, seconds: int) -> None:
    now = time.time()
    store = getattr(request.app.state, "_rl_store", {})
    hits = [t for t in store.get(key, []) if now - t < seconds]
    if len(hits) >= times:
        raise HTTPException(status_code=429, detail="Too Many Requests")
    hits.append(now)
    store[key] = hits
    request.app.state._rl_store = store


def optional_rate_limit(times: int, seconds: int):
    """
    Dépendance FastAPI: `times` requêtes max par `seconds` secondes et par clé.
    - LOCAL_RATE_LIMIT_FALLBACK=1: compteur mémoire (dev/tests)
    - sinon fastapi-limiter, si le lifespan l'a initialisé
    - panne Redis: requête laissée passer (pas de 429 en prod sur incident)
    """
    limiter = RateLimiter(times=times, seconds=seconds, identifier=_identifier)

    async def _dep(request: Request, response: Response):
        if os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1":
            _memory_hit(request, _user_key_from_request(request), times, seconds)
            return

        if getattr(request.app.state, "rate_limit_enabled", None) is False:
            return
        if FastAPILimiter.redis is None:
            return

        try:
            await limiter(request, response)
        except RedisError:
            logger.warning("rate_limit.redis failed path=%s", request.url.path, exc_info=True)

    return _dep


def rate_limit_health_info(request: Request) -> Dict[str, Any]:
    enabled = getattr(request.app.state, "rate_limit_enabled", None)
    limiter_ready = FastAPILimiter.redis is not None
    if os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1":
        backend = "memory"
    else:
        backend = "redis" if limiter_ready else None

    info: Dict[str, Any] = {
        "enabled": (bool(enabled) if enabled is not None else None),
        "ready": limiter_ready or backend == "memory",
        "backend": backend,
    }

    settings = getattr(request.app.state, "settings", None)
    if backend == "redis" and settings is not None and settings.rate_limit_redis_url:
        p = urlparse(settings.rate_limit_redis_url)
        info["redis"] = {"scheme": p.scheme, "host": p.hostname, "port": p.port}
    return info
