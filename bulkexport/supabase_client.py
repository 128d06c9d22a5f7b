import logging
import os
from typing import Optional

from supabase import create_client, Client
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get("SUPABASE_URL")
SUPABASE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")  # Use service role for backend

_supabase: Optional[Client] = None


def get_supabase() -> Client | None:
    """
    Get the Supabase client instance, creating it on first use.
    Returns None when the connection target is not configured.
    """
    global _supabase
    if _supabase is not None:
        return _supabase

    if not SUPABASE_URL or not SUPABASE_KEY:
        logger.warning("SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY not set. Supabase features will be disabled.")
        return None

    _supabase = create_client(SUPABASE_URL, SUPABASE_KEY)
    return _supabase
