"""Configuration - defaults, environment overrides and JSON loading"""

import json
import os
from dataclasses import dataclass, field, asdict
from typing import Dict, Mapping, Optional

from .constants import Defaults, SCENARIO_TIMEOUTS


@dataclass
class RestoreConfig:
    """Settings for the restoration service."""
    redis_url: str = "redis://localhost:6379"
    snapshot_dir: str = Defaults.SNAPSHOT_DIR
    stale_after_seconds: float = Defaults.STALE_AFTER_SECONDS
    clock_skew_seconds: float = Defaults.CLOCK_SKEW_SECONDS
    healthy_threshold: float = Defaults.HEALTHY_THRESHOLD
    degraded_threshold: float = Defaults.DEGRADED_THRESHOLD
    validation_threshold: float = Defaults.VALIDATION_THRESHOLD
    monitor_interval: float = Defaults.MONITOR_INTERVAL
    recovery_lock_ttl: int = Defaults.RECOVERY_LOCK_TTL
    history_limit: int = Defaults.HISTORY_LIMIT
    notification_limit: int = Defaults.NOTIFICATION_LIMIT
    snapshot_compress_threshold: Optional[int] = Defaults.SNAPSHOT_COMPRESS_THRESHOLD
    backup_interval: Optional[float] = None
    step_timeouts: Dict[str, float] = field(default_factory=lambda: dict(SCENARIO_TIMEOUTS))

    ENV_VARS = {
        'REDIS_URL': ('redis_url', str),
        'CTX_SNAPSHOT_DIR': ('snapshot_dir', str),
        'CTX_STALE_AFTER_SECONDS': ('stale_after_seconds', float),
        'CTX_CLOCK_SKEW_SECONDS': ('clock_skew_seconds', float),
        'CTX_HEALTHY_THRESHOLD': ('healthy_threshold', float),
        'CTX_VALIDATION_THRESHOLD': ('validation_threshold', float),
        'CTX_MONITOR_INTERVAL': ('monitor_interval', float),
        'CTX_RECOVERY_LOCK_TTL': ('recovery_lock_ttl', int),
        'CTX_SNAPSHOT_COMPRESS_THRESHOLD': ('snapshot_compress_threshold', int),
        'CTX_BACKUP_INTERVAL': ('backup_interval', float),
    }

    def __post_init__(self):
        if not 0 < self.degraded_threshold <= self.healthy_threshold <= 1:
            raise ValueError("Thresholds must satisfy 0 < degraded <= healthy <= 1")
        if self.monitor_interval <= 0:
            raise ValueError("monitor_interval must be positive")
        if self.backup_interval is not None and self.backup_interval <= 0:
            raise ValueError("backup_interval must be positive")
        if self.snapshot_compress_threshold is not None and self.snapshot_compress_threshold < 0:
            raise ValueError("snapshot_compress_threshold must not be negative")
        unknown = set(self.step_timeouts) - set(SCENARIO_TIMEOUTS)
        if unknown:
            raise ValueError(f"Unknown scenarios in step_timeouts: {sorted(unknown)}")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'RestoreConfig':
        """Build config from environment variables over the defaults."""
        env = os.environ if env is None else env
        values = {}
        for var, (name, cast) in cls.ENV_VARS.items():
            if env.get(var):
                try:
                    values[name] = cast(env[var])
                except ValueError:
                    raise ValueError(f"Invalid value for {var}: {env[var]!r}")
        return cls(**values)

    @classmethod
    def load(cls, path: str) -> 'RestoreConfig':
        """Load config from a JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)

        timeouts = dict(SCENARIO_TIMEOUTS)
        timeouts.update(data.pop('step_timeouts', {}))
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(step_timeouts=timeouts, **known)

    def to_dict(self) -> Dict:
        return asdict(self)
