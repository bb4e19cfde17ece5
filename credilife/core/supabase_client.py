import logging
from supabase import create_client, Client
from credilife.core.config import settings
from credilife.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def get_supabase_client() -> Client:
    """Create and return a Supabase client using values from `settings`.

    Raises ConfigurationError if the URL or a key is missing.
    """
    supabase_url = settings.SUPABASE_URL
    supabase_key = settings.SUPABASE_SERVICE_ROLE or settings.SUPABASE_ANON_PUBLIC

    if not supabase_url:
        logger.error("SUPABASE_URL is not configured")
        raise ConfigurationError("Supabase configuration missing: set SUPABASE_URL environment variable")

    if not supabase_key:
        logger.error("No Supabase key configured (SUPABASE_SERVICE_ROLE or SUPABASE_ANON_PUBLIC)")
        raise ConfigurationError("Supabase configuration missing: set SUPABASE_SERVICE_ROLE or SUPABASE_ANON_PUBLIC environment variable")

    # The scheduler reads installments across all customers; the anon key usually cannot
    if settings.SUPABASE_SERVICE_ROLE is None and settings.SUPABASE_ANON_PUBLIC:
        logger.warning("SUPABASE_SERVICE_ROLE not set; falling back to SUPABASE_ANON_PUBLIC (reduced privileges)")

    masked_url = supabase_url.split('://')[-1]
    masked_key = f"{supabase_key[:4]}...{supabase_key[-4:]}" if len(supabase_key) > 8 else "<hidden>"
    logger.debug(f"Using Supabase URL host: {masked_url} and key: {masked_key}")

    return create_client(supabase_url, supabase_key)
