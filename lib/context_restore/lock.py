"""Recovery Lock - at most one recovery run at a time"""

import json
import os
import socket
import threading
import uuid
from typing import Dict, Optional

import redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from .constants import Defaults, RedisKeys
from .models import utcnow
from .security import get_logger

logger = get_logger(__name__)


class RecoveryLock:
    """Exclusive recovery lock held both in-process and in Redis.

    Acquisition never blocks:
    - the in-process lock stops two runs inside one process
    - ``SET NX EX`` on ``ctx:recovery:lock`` stops runs in other processes
    - the TTL frees the lock if the holder dies mid-run

    When Redis is unreachable the in-process lock alone is used.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl: int = Defaults.RECOVERY_LOCK_TTL,
        key: str = RedisKeys.RECOVERY_LOCK
    ):
        self.redis = redis_client
        self.ttl = ttl
        self.key = key
        self._local = threading.Lock()
        self._token: Optional[str] = None
        self._remote_held = False

    def acquire(self, recovery_id: Optional[str] = None) -> bool:
        """Try to take the lock. Returns False if another run holds it."""
        if not self._local.acquire(blocking=False):
            return False

        token = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        lock_data = json.dumps({
            'owner': token,
            'recovery_id': recovery_id,
            'acquired_at': utcnow().isoformat(),
            'ttl': self.ttl
        })

        try:
            acquired = self.redis.set(self.key, lock_data, nx=True, ex=self.ttl)
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            logger.warning("Recovery lock store unreachable, using process lock only: %s", e)
            self._token = token
            self._remote_held = False
            return True

        if not acquired:
            self._local.release()
            return False

        self._token = token
        self._remote_held = True
        return True

    def release(self) -> bool:
        """Release the lock if this instance holds it."""
        if self._token is None:
            return False

        released = True
        if self._remote_held:
            try:
                released = self._release_remote(self._token)
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                logger.warning("Could not release recovery lock in Redis, TTL will expire it: %s", e)
                released = False

        self._token = None
        self._remote_held = False
        self._local.release()
        return released

    def _release_remote(self, token: str) -> bool:
        """Delete the Redis lock only if it still names this owner."""
        def _release(pipe):
            data = pipe.get(self.key)
            pipe.multi()
            if not data:
                return False
            try:
                owner = json.loads(data).get('owner')
            except ValueError:
                return False
            if owner != token:
                return False
            pipe.delete(self.key)
            return True

        return self.redis.transaction(_release, self.key, value_from_callable=True)

    @property
    def held(self) -> bool:
        return self._token is not None

    def is_locked(self) -> bool:
        """Whether any run, here or elsewhere, holds the lock."""
        if self._local.locked():
            return True
        try:
            return self.redis.exists(self.key) > 0
        except (RedisConnectionError, RedisTimeoutError, OSError):
            return False

    def get_lock_info(self) -> Optional[Dict]:
        try:
            data = self.redis.get(self.key)
        except (RedisConnectionError, RedisTimeoutError, OSError):
            return None
        if data:
            return json.loads(data)
        return None
