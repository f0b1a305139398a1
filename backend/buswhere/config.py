import os
from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Runtime configuration for the BusWhere+ backend."""
    backend: Literal["mock", "supabase"] = "mock"

    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    supabase_timeout: float = Field(10.0, gt=0)

    redis_enabled: bool = True
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    live_locations_cache_ttl: int = Field(3, ge=0)  # seconds, 0 disables

    simulator_enabled: bool = True
    global_tick_seconds: float = Field(10.0, gt=0)
    bus_tick_seconds: float = Field(5.0, gt=0)
    route_tick_seconds: float = Field(15.0, gt=0)

    mock_delay_seconds: float = Field(0.0, ge=0)
    live_window_seconds: int = Field(600, gt=0)  # "recent" live locations

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        return cls(
            backend=os.getenv("BUSWHERE_BACKEND", "mock").lower(),
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
            supabase_timeout=float(os.getenv("SUPABASE_TIMEOUT", "10")),
            redis_enabled=_env_bool("REDIS_ENABLED", True),
            redis_host=os.getenv("REDIS_HOST", "localhost"),
            redis_port=int(os.getenv("REDIS_PORT", "6379")),
            redis_password=os.getenv("REDIS_PASSWORD"),
            live_locations_cache_ttl=int(os.getenv("LIVE_LOCATIONS_CACHE_TTL", "3")),
            simulator_enabled=_env_bool("SIMULATOR_ENABLED", True),
            global_tick_seconds=float(os.getenv("GLOBAL_TICK_SECONDS", "10")),
            bus_tick_seconds=float(os.getenv("BUS_TICK_SECONDS", "5")),
            route_tick_seconds=float(os.getenv("ROUTE_TICK_SECONDS", "15")),
            mock_delay_seconds=float(os.getenv("MOCK_DELAY_SECONDS", "0")),
            live_window_seconds=int(os.getenv("LIVE_WINDOW_SECONDS", "600")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
