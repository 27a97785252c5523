import logging
import re
import secrets
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request

from herd.app_setup.dependencies import get_auth_client, get_settings
from herd.config import Settings

logger = logging.getLogger(__name__)

BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)
CRON_SECRET_HEADER = "x-cron-secret"


def extract_bearer(request: Request) -> Optional[str]:
    match = BEARER_RE.match(request.headers.get("Authorization", "").strip())
    if not match:
        return None
    return match.group(1).strip() or None


def get_current_user(request: Request, client=Depends(get_auth_client)) -> Dict[str, Any]:
    token = extract_bearer(request)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")

    # Délégué au service Auth
    from herd.auth.service import get_user_from_token as _svc_get_user_from_token
    return _svc_get_user_from_token(client, token)


def _same(a: str, b: str) -> bool:
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def require_user(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return user


def require_internal(request: Request, settings: Settings = Depends(get_settings)) -> None:
    """
    Authentification des tâches planifiées (sweepers), distincte des utilisateurs:
    - en-tête x-cron-secret == CRON_SECRET
    - ou Authorization: Bearer <clé service-role>
    """
    provided = request.headers.get(CRON_SECRET_HEADER, "")
    if settings.cron_secret and provided and _same(provided, settings.cron_secret):
        return
    token = extract_bearer(request) or ""
    if settings.supabase_service_key and token and _same(token, settings.supabase_service_key):
        return
    logger.warning("security.require_internal rejected path=%s", request.url.path)
    raise HTTPException(status_code=401, detail="Unauthorized")
