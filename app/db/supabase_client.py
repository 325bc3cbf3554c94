"""Supabase client initialization."""

from functools import lru_cache
from typing import Any

from supabase import Client, create_client

from app.core.config import get_settings


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """
    Get Supabase client instance (cached singleton).

    Returns:
        Supabase client configured with service role key

    Raises:
        RuntimeError: If client initialization fails
    """
    try:
        settings = get_settings()
        return create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    except Exception as e:
        raise RuntimeError(f"Failed to initialize Supabase client: {e}") from e


def get_bucket() -> Any:
    """Storage bucket holding every stage artifact."""
    return get_supabase().storage.from_(get_settings().STORAGE_BUCKET)


def get_projects_table() -> Any:
    """Query builder for the pipeline projects table."""
    return get_supabase().table(get_settings().PROJECTS_TABLE)
