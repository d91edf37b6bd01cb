"""Supabase client factories.

Clients are built once by the application lifespan and handed to the
objects that need them; nothing here caches a client at module level.
"""

from supabase import create_client, Client

from app.config import Settings, settings as default_settings


def create_service_client(config: Settings = default_settings) -> Client:
    """Create a client using the service role key (bypasses row-level security)."""
    if not config.supabase_url or not config.supabase_service_role_key:
        raise RuntimeError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set"
        )
    return create_client(config.supabase_url, config.supabase_service_role_key)


def create_anon_client(config: Settings = default_settings) -> Client:
    """Create a client with the public anon key, used to validate user tokens."""
    if not config.supabase_url or not config.supabase_anon_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
    return create_client(config.supabase_url, config.supabase_anon_key)
