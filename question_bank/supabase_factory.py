# question_bank/supabase_factory.py
"""
Supabase client factory for the question bank.

The quota pipeline only ever works with the service role client: it counts,
inserts and deletes rows across every product, so row level security would
hide inventory from it.
"""

import os
import logging
from typing import Optional
from supabase import create_client, Client

logger = logging.getLogger(__name__)


class SupabaseFactory:
    """
    Singleton holder for the service role Supabase client.
    """

    _service_client: Optional[Client] = None
    _initialized: bool = False

    @classmethod
    def initialize(cls, supabase_url: str = None, service_role_key: str = None) -> None:
        """
        Create the service role client.
        Call this once from the entry point before building any database client.
        """
        url = supabase_url or os.getenv('SUPABASE_URL')
        service_key = service_role_key or os.getenv('SUPABASE_SERVICE_ROLE_KEY')

        if not url or not service_key:
            logger.error("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
            raise ValueError("Missing Supabase credentials")

        try:
            cls._service_client = create_client(url, service_key)
            cls._initialized = True
            logger.info("Supabase service role client initialized")

        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {e}")
            raise

    @classmethod
    def get_service_client(cls) -> Optional[Client]:
        """Get the service role client (bypasses RLS)."""
        if not cls._initialized:
            raise RuntimeError("SupabaseFactory not initialized. Call initialize() first.")
        return cls._service_client

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._initialized

    @classmethod
    def reset(cls) -> None:
        """Reset the factory (mainly for testing purposes)."""
        cls._service_client = None
        cls._initialized = False


def get_supabase_admin() -> Optional[Client]:
    """Get the service role Supabase client."""
    return SupabaseFactory.get_service_client()
