import logging
from typing import Any, Dict

from fastapi import HTTPException
from supabase import Client

from .repository import get_user_from_access_token as _repo_get_user_from_token

logger = logging.getLogger(__name__)


def get_user_from_token(client: Client, access_token: str) -> Dict[str, Any]:
    """Normalise l'utilisateur issu de supabase.auth.get_user(access_token):
    - Retourne {id, email, metadata, token}
    - 401 si le jeton est invalide ou expiré
    """
    try:
        raw = _repo_get_user_from_token(client, access_token)
    except Exception:
        # gotrue lève des erreurs hétérogènes (AuthApiError, httpx...): toutes valent 401
        logger.info("auth.get_user_from_token rejected token")
        raise HTTPException(status_code=401, detail="Unauthorized")
    uid = raw.get("id")
    if not uid:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return {
        "id": str(uid),
        "email": raw.get("email"),
        "metadata": raw.get("user_metadata") or {},
        "token": access_token,
    }
