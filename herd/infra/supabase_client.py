from supabase import create_client, Client

from herd.config import Settings


def create_service_client(settings: Settings) -> Client:
    """Client service-role (contourne RLS): registre des réservations, sweepers, outbox."""
    if not settings.supabase_url:
        raise RuntimeError("SUPABASE_URL manquant pour create_service_client()")
    if not settings.supabase_service_key:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY manquant pour create_service_client()")
    return create_client(settings.supabase_url, settings.supabase_service_key)


def create_auth_client(settings: Settings) -> Client:
    """
    Client utilisé pour valider les jetons utilisateurs (auth.get_user).
    Clé anon si disponible, sinon la clé service.
    """
    key = settings.supabase_anon_key or settings.supabase_service_key
    if not settings.supabase_url or not key:
        raise RuntimeError("SUPABASE_URL/SUPABASE_ANON_KEY manquants pour create_auth_client()")
    return create_client(settings.supabase_url, key)
