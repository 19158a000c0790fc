"""Context Restoration Service - main interface for callers"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import redis

from .analyzer import ConsistencyAnalyzer
from .config import RestoreConfig
from .lock import RecoveryLock
from .models import ConsistencyReport, HealthReport, RestoreResult, Snapshot, ValidationOutcome, utcnow
from .monitor import HealthMonitor
from .notify import RedisNotifier
from .orchestrator import RecoveryOrchestrator
from .recovery import RecoveryResult
from .redis_factory import create_redis_client
from .security import get_logger
from .snapshots import SnapshotManager, SnapshotRef, SnapshotStore
from .storage import StateAccessor
from .telemetry import RecoveryMetrics, get_metrics

logger = get_logger(__name__)


class ContextRestorationService:
    """Analysis, snapshots, recovery and health monitoring over one Redis store.

    Example:
        service = ContextRestorationService()
        service.initialize_recovery_workflows()
        snapshot = service.create_snapshot("pre-deployment-backup")
        report = service.analyze()
        if report.overall_score < 0.5:
            service.execute_recovery()
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        config: Optional[RestoreConfig] = None,
        notifier=None,
        metrics: Optional[RecoveryMetrics] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.config = config or RestoreConfig.from_env()
        self.redis = redis_client or create_redis_client(self.config.redis_url)
        self.metrics = metrics or get_metrics()
        self.clock = clock

        self.accessor = StateAccessor(self.redis)
        self.store = SnapshotStore(self.config.snapshot_dir, compress_threshold=self.config.snapshot_compress_threshold)
        self.analyzer = ConsistencyAnalyzer(
            self.accessor,
            snapshot_store=self.store,
            stale_after_seconds=self.config.stale_after_seconds,
            clock_skew_seconds=self.config.clock_skew_seconds,
            healthy_threshold=self.config.healthy_threshold,
            degraded_threshold=self.config.degraded_threshold,
            clock=clock,
            metrics=self.metrics,
        )
        self.snapshots = SnapshotManager(self.accessor, self.store, self.analyzer, self.metrics, clock)
        self.lock = RecoveryLock(self.redis, ttl=self.config.recovery_lock_ttl)
        self.notifier = notifier or RedisNotifier(self.redis, limit=self.config.notification_limit)
        self.orchestrator = RecoveryOrchestrator(
            self.accessor,
            self.analyzer,
            self.snapshots,
            self.lock,
            notifier=self.notifier,
            metrics=self.metrics,
            clock=clock,
            step_timeouts=self.config.step_timeouts,
            history_limit=self.config.history_limit,
        )
        self._monitor: Optional[HealthMonitor] = None

    # === Analysis ===

    def analyze(self) -> ConsistencyReport:
        return self.analyzer.analyze()

    def validate(self) -> ValidationOutcome:
        """Analyze and apply the pass/fail threshold."""
        report = self.analyzer.analyze()
        valid = (
            report.overall_score >= self.config.validation_threshold
            and not report.critical_failures
            and report.accessor_error is None
        )

        recommendations = []
        if report.accessor_error:
            recommendations.append("Check storage connectivity")
        if report.critical_failures or report.failed_checks:
            recommendations.append("Run execute_recovery() to repair detected inconsistencies")
        if report.stale_agents:
            recommendations.append(f"Restart unreachable agents: {', '.join(report.stale_agents)}")

        return ValidationOutcome(
            valid=valid,
            score=report.overall_score,
            issues=list(report.issues),
            failed_checks=report.failed_checks,
            recommendations=recommendations,
        )

    # === Snapshots ===

    def create_snapshot(self, reason: str) -> Snapshot:
        return self.snapshots.create_snapshot(reason)

    def restore_snapshot(self, ref: SnapshotRef = None) -> RestoreResult:
        return self.snapshots.restore_snapshot(ref)

    def generate_summary(self, snapshot: Optional[Snapshot] = None) -> str:
        return self.snapshots.generate_summary(snapshot)

    def list_snapshots(self) -> List[Snapshot]:
        return self.snapshots.list_snapshots()

    # === Recovery ===

    def execute_recovery(self, scenario: Any = None) -> RecoveryResult:
        return self.orchestrator.execute_recovery(scenario)

    def initialize_recovery_workflows(self) -> List[str]:
        return self.orchestrator.initialize_recovery_workflows()

    def get_recovery_status(self) -> Dict[str, Any]:
        return self.orchestrator.get_recovery_status()

    # === Health monitoring ===

    @property
    def monitor(self) -> Optional[HealthMonitor]:
        return self._monitor

    @property
    def last_health_report(self) -> Optional[HealthReport]:
        return self._monitor.last_report if self._monitor else None

    def start_health_monitoring(self, interval_ms: Optional[int] = None, backup_interval_ms: Optional[int] = None) -> HealthMonitor:
        """Start (or restart with a new interval) the background health monitor.

        ``backup_interval_ms`` (or ``config.backup_interval``) schedules
        periodic snapshots from the monitor loop.
        """
        interval = interval_ms / 1000.0 if interval_ms is not None else self.config.monitor_interval
        if backup_interval_ms is not None:
            backup_interval = backup_interval_ms / 1000.0
        else:
            backup_interval = self.config.backup_interval
        if self._monitor is not None:
            self._monitor.stop()
        self._monitor = HealthMonitor(
            self.analyzer,
            self.orchestrator.execute_recovery,
            interval=interval,
            clock=self.clock,
            metrics=self.metrics,
            backup=self._scheduled_snapshot,
            backup_interval=backup_interval,
        )
        self._monitor.start()
        return self._monitor

    def stop_health_monitoring(self) -> None:
        if self._monitor is not None:
            self._monitor.stop()

    def _scheduled_snapshot(self) -> Snapshot:
        return self.snapshots.create_snapshot("scheduled-backup")
