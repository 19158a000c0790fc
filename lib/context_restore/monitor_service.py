"""Background service hosting the health monitor.

Usage:
    python -m context_restore.monitor_service

Environment variables:
    REDIS_URL: Redis connection URL (default: redis://localhost:6379)
    CTX_MONITOR_INTERVAL: Seconds between health checks (default: 30)
    CTX_BACKUP_INTERVAL: Seconds between scheduled snapshots (default: off)
    CTX_CONFIG: Optional JSON config file, read instead of the environment
"""

import logging
import os
import signal
import sys
import threading
from typing import Optional

from .config import RestoreConfig
from .redis_factory import RedisStartupError, create_redis_client
from .security import get_logger
from .service import ContextRestorationService

logger = get_logger(__name__)


class MonitorService:
    """Long-running process that monitors health until signalled to stop."""

    def __init__(self, config: RestoreConfig, redis_client=None):
        self.config = config
        self.redis = redis_client
        self.service: Optional[ContextRestorationService] = None
        self._stop_event = threading.Event()

    def start(self, install_signals: bool = True) -> None:
        """Start monitoring and block until stopped."""
        if install_signals:
            signal.signal(signal.SIGTERM, self._handle_shutdown)
            signal.signal(signal.SIGINT, self._handle_shutdown)

        if self.redis is None:
            try:
                self.redis = create_redis_client(self.config.redis_url)
            except RedisStartupError as e:
                logger.error("Failed to connect to Redis: %s", e)
                sys.exit(1)

        self.service = ContextRestorationService(self.redis, self.config)
        self.service.initialize_recovery_workflows()

        logger.info("Monitor service started")
        logger.info("  Redis: %s", self.config.redis_url)
        logger.info("  Interval: %ss", self.config.monitor_interval)
        logger.info("  Snapshots: %s", self.config.snapshot_dir)

        self.service.start_health_monitoring(int(self.config.monitor_interval * 1000))
        try:
            self._stop_event.wait()
        finally:
            self.service.stop_health_monitoring()
            logger.info("Monitor service stopped")

    def _handle_shutdown(self, signum: int, frame) -> None:
        """Handle shutdown signals gracefully."""
        logger.info("Shutdown requested (signal %s)", signum)
        self._stop_event.set()

    def stop(self) -> None:
        self._stop_event.set()


def main() -> None:
    """Entry point for the monitor service."""
    logging.basicConfig(
        level=os.environ.get("CTX_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    config_path = os.environ.get("CTX_CONFIG")
    config = RestoreConfig.load(config_path) if config_path else RestoreConfig.from_env()
    service = MonitorService(config)

    try:
        service.start()
    except KeyboardInterrupt:
        logger.info("Interrupted")
        service.stop()
    except Exception as e:
        logger.error("Fatal error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
