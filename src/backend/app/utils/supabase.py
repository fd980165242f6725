from supabase import create_client, Client
from app.config import settings


def get_supabase_client() -> Client:
    """
    Create and return a Supabase client instance.
    Uses the service role key; rows are scoped by user_id in every query.

    Raises:
        RuntimeError: If the Supabase URL or service key is missing
    """
    if not (settings.SUPABASE_URL and settings.SUPABASE_SERVICE_KEY):
        raise RuntimeError("Supabase is not configured (SUPABASE_URL / SUPABASE_SERVICE_KEY)")

    supabase: Client = create_client(
        settings.SUPABASE_URL,
        settings.SUPABASE_SERVICE_KEY
    )
    return supabase
