"""Context Restoration and Recovery

Consistency analysis, snapshots and scripted recovery for the persisted
state of coordinating agents.
"""

from .analyzer import ConsistencyAnalyzer
from .config import RestoreConfig
from .constants import CheckIds, Defaults, RedisKeys, SCENARIO_TIMEOUTS
from .errors import (
    AccessorUnavailable,
    CriticalValidationFailed,
    IntegrityViolation,
    MalformedStructure,
    RecoveryAlreadyInProgress,
    RecoveryError,
    RecoveryEscalated,
    SchemaIncompatible,
    SnapshotNotFound,
    StepFailed,
    StepTimeout,
)
from .lock import RecoveryLock
from .models import (
    AgentRecord,
    CheckResult,
    ConsistencyReport,
    GlobalMemory,
    HealthReport,
    HealthStatus,
    RestoreResult,
    SessionState,
    Snapshot,
    StateModel,
    ValidationOutcome,
)
from .monitor import HealthMonitor
from .notify import RedisNotifier
from .orchestrator import RecoveryOrchestrator, classify
from .recovery import (
    FailureMode,
    FailureScenario,
    RecoveryPhase,
    RecoveryPlan,
    RecoveryResult,
    RecoveryStep,
    ScenarioType,
    Severity,
    StepAction,
    ValidationCheck,
    ValidationType,
)
from .security import sanitize, sanitize_dict, SecureLogger, REDACTED
from .service import ContextRestorationService
from .snapshots import SnapshotManager, SnapshotStore
from .storage import StateAccessor
from .telemetry import RecoveryMetrics, SimpleMetrics, MetricSnapshot, get_metrics, init_metrics

__all__ = [
    'ContextRestorationService',
    'ConsistencyAnalyzer',
    'SnapshotManager',
    'SnapshotStore',
    'RecoveryOrchestrator',
    'HealthMonitor',
    'StateAccessor',
    'RecoveryLock',
    'RedisNotifier',
    'RestoreConfig',
    'classify',
    'CheckIds',
    'Defaults',
    'RedisKeys',
    'SCENARIO_TIMEOUTS',
    'RecoveryError',
    'AccessorUnavailable',
    'IntegrityViolation',
    'MalformedStructure',
    'SchemaIncompatible',
    'SnapshotNotFound',
    'StepTimeout',
    'StepFailed',
    'CriticalValidationFailed',
    'RecoveryAlreadyInProgress',
    'RecoveryEscalated',
    'AgentRecord',
    'SessionState',
    'GlobalMemory',
    'StateModel',
    'CheckResult',
    'ConsistencyReport',
    'ValidationOutcome',
    'HealthReport',
    'HealthStatus',
    'Snapshot',
    'RestoreResult',
    'FailureScenario',
    'ScenarioType',
    'Severity',
    'StepAction',
    'FailureMode',
    'ValidationType',
    'RecoveryPhase',
    'RecoveryStep',
    'ValidationCheck',
    'RecoveryPlan',
    'RecoveryResult',
    'sanitize',
    'sanitize_dict',
    'SecureLogger',
    'REDACTED',
    'RecoveryMetrics',
    'SimpleMetrics',
    'MetricSnapshot',
    'get_metrics',
    'init_metrics',
]

__version__ = '0.1.0'
