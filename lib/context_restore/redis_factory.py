"""Connecting to the Redis store that holds agent state.

The monitor service starts alongside Redis, so the first connection is
retried with capped exponential backoff before giving up.
"""

import random
import time
from typing import Callable, Iterator

import redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from .errors import AccessorUnavailable
from .security import get_logger, sanitize

logger = get_logger(__name__)

# Fraction of each delay applied as random jitter in both directions.
JITTER = 0.25


class RedisStartupError(AccessorUnavailable):
    """The state store stayed unreachable through every connection attempt."""
    code = "redis_startup_failed"


def backoff_delays(retries: int, base_delay: float, max_delay: float) -> Iterator[float]:
    """Jittered delays to wait between ``retries + 1`` connection attempts."""
    for attempt in range(retries):
        delay = min(base_delay * (2 ** attempt), max_delay)
        yield delay + delay * JITTER * (2 * random.random() - 1)


def create_redis_client(
    redis_url: str,
    max_retries: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    socket_timeout: float = 5.0,
    sleep: Callable[[float], None] = time.sleep
) -> redis.Redis:
    """Connect to the state store, pinging until it answers.

    Args:
        redis_url: Redis connection URL; never logged unredacted
        max_retries: Total connection attempts
        base_delay: Delay after the first failed attempt, doubled each time
        max_delay: Cap on a single delay
        socket_timeout: Per-command timeout of the returned client
        sleep: Wait function, replaced in tests

    Raises:
        RedisStartupError: every attempt failed
    """
    safe_url = sanitize(redis_url)
    delays = backoff_delays(max_retries - 1, base_delay, max_delay)
    last_error = None

    for attempt in range(1, max_retries + 1):
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        try:
            client.ping()
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            last_error = e
            logger.warning("State store %s unreachable (attempt %d/%d): %s", safe_url, attempt, max_retries, e)
            delay = next(delays, None)
            if delay is not None:
                logger.info("Retrying in %.1fs", delay)
                sleep(delay)
            continue
        if attempt > 1:
            logger.info("Connected to state store %s after %d attempts", safe_url, attempt)
        return client

    raise RedisStartupError(f"State store {safe_url} unreachable after {max_retries} attempts: {last_error}")
