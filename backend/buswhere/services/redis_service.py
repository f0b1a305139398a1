import json
import logging
from typing import Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel
from redis import Redis

T = TypeVar('T', bound=BaseModel)
logger = logging.getLogger(__name__)

KEY_PREFIX = "buswhere:"
LIVE_LOCATIONS_KEY = "live_locations"


class RedisService:
    """Service for the Redis cache and session storage.

    When Redis is disabled or unreachable every call degrades to a miss:
    `set_data` returns False and `get_data` returns None.
    """

    def __init__(self, host: str = "localhost", port: int = 6379, password: Optional[str] = None,
                 enabled: bool = True):
        """Initialize Redis connection."""
        self.redis = None
        if not enabled:
            logger.info("Redis disabled by configuration")
            return
        try:
            self.redis = Redis(host=host, port=port, password=password, decode_responses=True)
            self.redis.ping()
            logger.info("Successfully connected to Redis")
        except Exception as e:
            logger.warning(f"Failed to connect to Redis: {str(e)}. Caching and session storage disabled.")
            self.redis = None

    @property
    def available(self) -> bool:
        return self.redis is not None

    def set_data(self, key: str, data: Union[Dict, List, BaseModel], expiry: Optional[int] = None) -> bool:
        """Set data in Redis with optional expiry in seconds."""
        if self.redis is None:
            return False

        try:
            if isinstance(data, BaseModel):
                data = data.model_dump(mode="json")
            elif isinstance(data, list):
                data = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in data]

            serialized = json.dumps(data, default=str)
            return bool(self.redis.set(KEY_PREFIX + key, serialized, ex=expiry or None))
        except Exception as e:
            logger.error(f"Error setting data in Redis: {str(e)}")
            return False

    def get_data(self, key: str, model_class: Optional[Type[T]] = None) -> Optional[Union[Dict, List, T]]:
        """Get data from Redis and optionally convert to model instance."""
        if self.redis is None:
            return None

        try:
            data = self.redis.get(KEY_PREFIX + key)

            if not data:
                return None

            deserialized = json.loads(data)

            if model_class:
                return model_class.model_validate(deserialized)

            return deserialized
        except Exception as e:
            logger.error(f"Error getting data from Redis: {str(e)}")
            return None

    def delete_data(self, key: str) -> bool:
        """Delete data from Redis."""
        if self.redis is None:
            return False

        try:
            return bool(self.redis.delete(KEY_PREFIX + key))
        except Exception as e:
            logger.error(f"Error deleting data from Redis: {str(e)}")
            return False

    def close(self) -> None:
        if self.redis is not None:
            self.redis.close()
