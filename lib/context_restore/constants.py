"""Constants and Redis key patterns for context restoration."""


class RedisKeys:
    """Redis key patterns and prefixes."""

    AGENTS = "ctx:agents"
    SESSION = "ctx:session"
    GLOBAL = "ctx:global"
    EPOCH = "ctx:epoch"

    RECOVERY_LOCK = "ctx:recovery:lock"
    RECOVERY_PLANS = "ctx:recovery:plans"
    RECOVERY_HISTORY = "ctx:recovery:history"

    NOTIFICATIONS = "ctx:notifications"
    EVENTS_CHANNEL = "ctx:events"

    STATE_KEYS = (AGENTS, SESSION, GLOBAL)


class CheckIds:
    """Identifiers of the consistency checks."""
    REGISTRY_CONSISTENCY = "registry_consistency"
    MEMORY_INTEGRITY = "memory_integrity"
    TIMESTAMP_CONSISTENCY = "timestamp_consistency"
    CROSS_REFERENCE = "cross_reference"
    HEARTBEAT_FRESHNESS = "heartbeat_freshness"


QUEUE_NAMES = ("pending", "active", "completed", "blocked")

SCHEMA_VERSION = 1
SUPPORTED_MEMORY_SCHEMAS = (1,)


class Defaults:
    """Default configuration values."""
    STALE_AFTER_SECONDS = 300
    CLOCK_SKEW_SECONDS = 5
    HEALTHY_THRESHOLD = 0.9
    DEGRADED_THRESHOLD = 0.5
    VALIDATION_THRESHOLD = 0.8
    MONITOR_INTERVAL = 30
    RECOVERY_LOCK_TTL = 900
    HISTORY_LIMIT = 100
    NOTIFICATION_LIMIT = 500
    SNAPSHOT_DIR = "./memory/snapshots"
    # Artifacts larger than this many bytes are gzipped.
    SNAPSHOT_COMPRESS_THRESHOLD = 1024

    # Critical weight is three times the non-critical weight.
    CRITICAL_WEIGHT = 3.0
    NON_CRITICAL_WEIGHT = 1.0
    CRITICAL_FAILURE_CEILING = 0.45


# Expected recovery time per scenario, in seconds. Used as default step timeouts.
SCENARIO_TIMEOUTS = {
    "agent_failure": 15,
    "session_corruption": 30,
    "memory_corruption": 120,
    "partial_loss": 60,
    "complete_loss": 180,
}
