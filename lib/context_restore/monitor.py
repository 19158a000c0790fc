"""Health Monitor - periodic analysis with automatic recovery on critical transitions."""

import threading
from collections import deque
from datetime import datetime
from typing import Callable, Deque, List, Optional

from .errors import RecoveryError, RecoveryEscalated
from .models import HealthReport, HealthStatus, utcnow
from .security import get_logger
from .telemetry import RecoveryMetrics, get_metrics

logger = get_logger(__name__)


class HealthMonitor:
    """Runs the analyzer on an interval in a background thread.

    Recovery is triggered once per transition into ``critical``; it is not
    triggered again until health has left ``critical`` and come back.
    Each instance owns its own state, so independent monitors can coexist.

    With ``backup`` and ``backup_interval`` set, a scheduled snapshot is
    taken on the first tick and then whenever ``backup_interval`` seconds
    have passed, except while health is critical.
    """

    def __init__(
        self,
        analyzer,
        recover: Callable[[], object],
        interval: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
        history_size: int = 100,
        on_report: Optional[Callable[[HealthReport], None]] = None,
        metrics: Optional[RecoveryMetrics] = None,
        backup: Optional[Callable[[], object]] = None,
        backup_interval: Optional[float] = None
    ):
        if backup_interval is not None and backup_interval <= 0:
            raise ValueError("Backup interval must be positive")
        self.analyzer = analyzer
        self.recover = recover
        self.interval = interval
        self.clock = clock
        self.on_report = on_report
        self.metrics = metrics or get_metrics()
        self.backup = backup
        self.backup_interval = backup_interval

        self._last_backup_at: Optional[datetime] = None
        self._history: Deque[HealthReport] = deque(maxlen=history_size)
        self._last_status: Optional[HealthStatus] = None
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_report(self) -> Optional[HealthReport]:
        return self._history[-1] if self._history else None

    @property
    def history(self) -> List[HealthReport]:
        return list(self._history)

    def start(self, interval: Optional[float] = None) -> None:
        """Start the background loop; no-op if already running."""
        if self.is_running:
            return
        if interval is not None:
            self.interval = interval
        if self.interval <= 0:
            raise ValueError("Monitoring interval must be positive")

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="context-health-monitor", daemon=True)
        self._thread.start()
        logger.info("Health monitoring started (interval %.1fs)", self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Request a stop and wait for any in-flight tick to finish."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info("Health monitoring stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception("Health check failed: %s", e)
            self._stop_event.wait(self.interval)

    def tick(self) -> HealthReport:
        """Analyze once, and trigger recovery on a transition into critical."""
        with self._tick_lock:
            consistency = self.analyzer.analyze()
            report = HealthReport.from_report(consistency, timestamp=self.clock().isoformat())

            entering_critical = (
                report.status == HealthStatus.CRITICAL
                and self._last_status != HealthStatus.CRITICAL
            )
            self._last_status = report.status

            if entering_critical:
                logger.warning("Health became critical (score %.2f), starting recovery", consistency.overall_score)
                report.auto_recovery_triggered = True
                report.recovery_id = self._trigger_recovery()
            elif report.status != HealthStatus.CRITICAL:
                report.backup_snapshot_id = self._scheduled_backup()

            self._history.append(report)
            self.metrics.record_tick(report.status.value, report.auto_recovery_triggered)

        if self.on_report is not None:
            self.on_report(report)
        return report

    def _trigger_recovery(self) -> Optional[str]:
        try:
            result = self.recover()
        except RecoveryEscalated as e:
            logger.error("Automatic recovery escalated: %s", e)
            return e.result.recovery_id if e.result is not None else None
        recovery_id = getattr(result, 'recovery_id', None)
        logger.info(
            "Automatic recovery %s finished: success=%s error=%s",
            recovery_id, getattr(result, 'success', None), getattr(result, 'error', None)
        )
        return recovery_id

    def _scheduled_backup(self) -> Optional[str]:
        if self.backup is None or self.backup_interval is None:
            return None
        now = self.clock()
        if self._last_backup_at is not None and (now - self._last_backup_at).total_seconds() < self.backup_interval:
            return None

        self._last_backup_at = now
        try:
            snapshot = self.backup()
        except (RecoveryError, OSError) as e:
            logger.warning("Scheduled backup failed: %s", e)
            return None
        snapshot_id = getattr(snapshot, 'snapshot_id', None)
        logger.info("Scheduled backup %s taken", snapshot_id)
        return snapshot_id
