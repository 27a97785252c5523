"""
Sérialisation/désérialisation des métadonnées Stripe d'une réservation.
Les mêmes clés sont posées sur la session Checkout ET sur son PaymentIntent.
"""
import json
from typing import Any, Dict, List, Optional


def transfer_group_for(class_id: str, user_id: str) -> str:
    return f"booking_{class_id}_{user_id}"


def clean_student_names(names: Any, qty: int) -> List[str]:
    """Noms nettoyés (trim, vides retirés), tronqués à qty."""
    if not isinstance(names, list):
        return []
    out = [str(n).strip() for n in names if isinstance(n, str) and n.strip()]
    return out[:qty]


def make_metadata(
    *,
    class_id: str,
    user_id: str,
    qty: int,
    student_names: List[str],
    hold_id: Optional[str] = None,
) -> Dict[str, str]:
    """Stripe n'accepte que des valeurs chaîne dans metadata."""
    meta = {
        "class_id": str(class_id),
        "user_id": str(user_id),
        "qty": str(qty),
        "student_names": json.dumps(student_names),
        "transfer_group": transfer_group_for(class_id, user_id),
    }
    if hold_id:
        meta["hold_id"] = str(hold_id)
    return meta


def extract_metadata_from_session(session: Dict[str, Any]) -> Dict[str, Any]:
    """
    Lit les métadonnées d'une session (repli sur celles du PaymentIntent développé).
    - qty: entier >= 1 (1 par défaut)
    - student_names: liste (vide si JSON invalide)
    """
    meta = dict((session or {}).get("metadata") or {})
    pi = (session or {}).get("payment_intent")
    if isinstance(pi, dict):
        for k, v in (pi.get("metadata") or {}).items():
            meta.setdefault(k, v)

    try:
        qty = max(1, int(meta.get("qty") or 1))
    except (TypeError, ValueError):
        qty = 1
    try:
        names = json.loads(meta.get("student_names") or "[]")
    except ValueError:
        names = []

    return {
        "class_id": meta.get("class_id"),
        "user_id": meta.get("user_id"),
        "qty": qty,
        "student_names": clean_student_names(names, qty),
        "transfer_group": meta.get("transfer_group"),
        "hold_id": meta.get("hold_id"),
    }


def intent_user_id(session: Dict[str, Any]) -> Optional[str]:
    pi = (session or {}).get("payment_intent")
    if isinstance(pi, dict):
        return (pi.get("metadata") or {}).get("user_id")
    return None
