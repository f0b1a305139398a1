import logging
from typing import Dict, Optional

from ..config import Settings
from .auth_service import MockAuthService, SupabaseAuthService
from .fixture_store import FixtureStore
from .supabase_client import SupabaseClient
from .tracking_service import MockTrackingService, SupabaseTrackingService

logger = logging.getLogger(__name__)


def build_services(settings: Settings, store: Optional[FixtureStore] = None) -> Dict:
    """Tracking and auth services for the configured backend."""
    if settings.backend == "supabase":
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for the supabase backend")
        client = SupabaseClient(
            settings.supabase_url, settings.supabase_service_role_key, timeout=settings.supabase_timeout
        )
        logger.info(f"Using Supabase backend at {settings.supabase_url}")
        return {
            "tracking": SupabaseTrackingService(client, live_window=settings.live_window_seconds),
            "auth": SupabaseAuthService(client),
        }

    store = store or FixtureStore.seeded()
    logger.info("Using fixture-backed mock backend")
    return {
        "tracking": MockTrackingService(
            store, delay=settings.mock_delay_seconds, live_window=settings.live_window_seconds
        ),
        "auth": MockAuthService(store, delay=settings.mock_delay_seconds),
    }
