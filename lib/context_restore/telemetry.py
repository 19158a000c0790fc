"""Metrics for analysis, snapshot and recovery activity."""
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class MetricSnapshot:
    """Point-in-time copy of metrics."""
    timestamp: datetime
    counters: Dict[str, int]
    histograms: Dict[str, list]
    gauges: Dict[str, float]


class SimpleMetrics:
    """Lightweight in-process metrics."""

    def __init__(self, max_samples: int = 1000):
        self._counters: Dict[str, int] = {}
        self._histograms: Dict[str, list] = {}
        self._gauges: Dict[str, float] = {}
        self._max_samples = max_samples
        self._lock = threading.Lock()

    def increment(self, name: str, value: int = 1, labels: Dict[str, str] = None):
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def record(self, name: str, value: float, labels: Dict[str, str] = None):
        key = self._make_key(name, labels)
        with self._lock:
            samples = self._histograms.setdefault(key, [])
            samples.append(value)
            if len(samples) > self._max_samples:
                del samples[:-self._max_samples]

    def set_gauge(self, name: str, value: float, labels: Dict[str, str] = None):
        key = self._make_key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def _make_key(self, name: str, labels: Dict[str, str] = None) -> str:
        if not labels:
            return name
        label_str = ','.join(f'{k}={v}' for k, v in sorted(labels.items()))
        return f'{name}{{{label_str}}}'

    def get_counter(self, name: str, labels: Dict[str, str] = None) -> int:
        return self._counters.get(self._make_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Dict[str, str] = None) -> Optional[float]:
        return self._gauges.get(self._make_key(name, labels))

    def get_histogram_stats(self, name: str, labels: Dict[str, str] = None) -> Dict[str, float]:
        values = self._histograms.get(self._make_key(name, labels), [])
        if not values:
            return {'count': 0, 'min': 0, 'max': 0, 'avg': 0, 'p50': 0, 'p95': 0}

        sorted_vals = sorted(values)
        count = len(sorted_vals)
        return {
            'count': count,
            'min': sorted_vals[0],
            'max': sorted_vals[-1],
            'avg': sum(sorted_vals) / count,
            'p50': sorted_vals[int(count * 0.5)],
            'p95': sorted_vals[int(count * 0.95)] if count > 20 else sorted_vals[-1],
        }

    def snapshot(self) -> MetricSnapshot:
        with self._lock:
            return MetricSnapshot(
                timestamp=datetime.now(timezone.utc),
                counters=dict(self._counters),
                histograms={k: list(v) for k, v in self._histograms.items()},
                gauges=dict(self._gauges)
            )

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._gauges.clear()


class RecoveryMetrics:
    """Metrics collector for the restoration subsystem."""

    ANALYSES = 'ctx.analysis.runs'
    ANALYSIS_LATENCY = 'ctx.analysis.latency_ms'
    CONSISTENCY_SCORE = 'ctx.analysis.score'

    SNAPSHOTS_CREATED = 'ctx.snapshots.created'
    RESTORES = 'ctx.snapshots.restores'

    RECOVERY_RUNS = 'ctx.recovery.runs'
    RECOVERY_DURATION = 'ctx.recovery.duration_ms'
    STEP_EXECUTIONS = 'ctx.recovery.steps'
    STEP_LATENCY = 'ctx.recovery.step_latency_ms'

    MONITOR_TICKS = 'ctx.monitor.ticks'
    AUTO_RECOVERIES = 'ctx.monitor.auto_recoveries'

    def __init__(self, service_name: str = 'context-restore'):
        self._service_name = service_name
        self._metrics = SimpleMetrics()

    @property
    def raw(self) -> SimpleMetrics:
        return self._metrics

    def record_analysis(self, score: float, latency_ms: float, accessor_ok: bool):
        self._metrics.increment(self.ANALYSES, labels={'accessor_ok': str(accessor_ok).lower()})
        self._metrics.record(self.ANALYSIS_LATENCY, latency_ms)
        self._metrics.set_gauge(self.CONSISTENCY_SCORE, score)

    def record_snapshot(self, reason: str):
        self._metrics.increment(self.SNAPSHOTS_CREATED)

    def record_restore(self, success: bool, error: Optional[str] = None):
        labels = {'success': str(success).lower()}
        if error:
            labels['error'] = error
        self._metrics.increment(self.RESTORES, labels=labels)

    def record_recovery(self, scenario: str, success: bool, duration_ms: float):
        self._metrics.increment(self.RECOVERY_RUNS, labels={'scenario': scenario, 'success': str(success).lower()})
        self._metrics.record(self.RECOVERY_DURATION, duration_ms, labels={'scenario': scenario})

    def record_step(self, action: str, success: bool, latency_ms: float):
        self._metrics.increment(self.STEP_EXECUTIONS, labels={'action': action, 'success': str(success).lower()})
        self._metrics.record(self.STEP_LATENCY, latency_ms, labels={'action': action})

    def record_tick(self, status: str, triggered: bool):
        self._metrics.increment(self.MONITOR_TICKS, labels={'status': status})
        if triggered:
            self._metrics.increment(self.AUTO_RECOVERIES)

    @contextmanager
    def measure(self, histogram: str, labels: Dict[str, str] = None):
        """Record the duration of a block in a histogram."""
        start = time.time()
        try:
            yield
        finally:
            self._metrics.record(histogram, (time.time() - start) * 1000, labels=labels)

    def get_summary(self) -> Dict[str, Any]:
        snapshot = self._metrics.snapshot()
        return {
            'timestamp': snapshot.timestamp.isoformat(),
            'service': self._service_name,
            'counters': snapshot.counters,
            'gauges': snapshot.gauges,
            'histograms': {name: len(values) for name, values in snapshot.histograms.items()},
        }

    def reset(self):
        self._metrics.reset()


_metrics: Optional[RecoveryMetrics] = None


def get_metrics() -> RecoveryMetrics:
    """Get the process-wide metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = RecoveryMetrics()
    return _metrics


def init_metrics(service_name: str = 'context-restore') -> RecoveryMetrics:
    """Replace the process-wide metrics instance."""
    global _metrics
    _metrics = RecoveryMetrics(service_name)
    return _metrics
