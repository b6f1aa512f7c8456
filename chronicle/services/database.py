"""Shared Supabase client for the Chronicle services."""

import logging
from functools import lru_cache
from typing import Any

from chronicle.utils.errors import StoreError

logger = logging.getLogger(__name__)


@lru_cache
def create_supabase_client() -> Any:
    """
    Create the process-wide Supabase client from application settings.

    Returns:
        Supabase client instance

    Raises:
        StoreError: If Supabase is not configured
    """
    from supabase import create_client

    from chronicle.config import get_settings

    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_key:
        raise StoreError("Supabase is not configured (CHRONICLE_SUPABASE_URL / CHRONICLE_SUPABASE_KEY)")

    logger.info(f"Connecting to Supabase at {settings.supabase_url}")
    return create_client(settings.supabase_url, settings.supabase_key)
