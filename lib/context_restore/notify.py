"""Recovery notifications kept in a bounded Redis list."""

import json
from typing import Any, Dict, List

import redis

from .constants import Defaults, RedisKeys
from .security import sanitize_dict


class RedisNotifier:
    """Appends sanitized notification events to ``ctx:notifications`` and publishes them."""

    def __init__(
        self,
        redis_client: redis.Redis,
        key: str = RedisKeys.NOTIFICATIONS,
        limit: int = Defaults.NOTIFICATION_LIMIT,
        channel: str = RedisKeys.EVENTS_CHANNEL
    ):
        self.redis = redis_client
        self.key = key
        self.limit = limit
        self.channel = channel

    def notify(self, event: Dict[str, Any]) -> None:
        payload = json.dumps(sanitize_dict(event))
        pipe = self.redis.pipeline(transaction=True)
        pipe.rpush(self.key, payload)
        pipe.ltrim(self.key, -self.limit, -1)
        pipe.publish(self.channel, payload)
        pipe.execute()

    def recent(self, count: int = 20) -> List[Dict[str, Any]]:
        """Newest notifications, oldest first."""
        return [json.loads(item) for item in self.redis.lrange(self.key, -count, -1)]
