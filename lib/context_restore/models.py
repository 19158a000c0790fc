"""Data model for persisted agent state, reports and snapshots."""

import hashlib
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .constants import QUEUE_NAMES, SCHEMA_VERSION


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are read as UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def canonical_json(data: Any) -> str:
    """Stable JSON encoding used for hashing."""
    return json.dumps(data, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass
class AgentRecord:
    """Durable state of one coordinating agent."""
    id: str
    role_spec: Dict[str, Any] = field(default_factory=dict)
    memory_bank: Dict[str, Any] = field(default_factory=dict)
    last_heartbeat: Optional[str] = None
    coordination_state: Dict[str, Any] = field(default_factory=dict)
    schema_version: int = SCHEMA_VERSION

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'AgentRecord':
        if not isinstance(data, dict) or not data.get('id'):
            raise ValueError("agent record must be an object with an id")
        if not isinstance(data.get('role_spec', {}), dict):
            raise ValueError("role_spec must be an object")
        if not isinstance(data.get('coordination_state', {}), dict):
            raise ValueError("coordination_state must be an object")
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class SessionState:
    """Shared coordination session: registry, task queues, channels."""
    session_id: str = "default"
    registry: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    task_queues: Dict[str, List[Dict[str, Any]]] = field(
        default_factory=lambda: {name: [] for name in QUEUE_NAMES}
    )
    performance_metrics: Dict[str, float] = field(default_factory=dict)
    coordination_channels: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'SessionState':
        if not isinstance(data, dict):
            raise ValueError("session state must be an object")
        registry = data.get('registry', {})
        queues = data.get('task_queues', {})
        channels = data.get('coordination_channels', {})
        if not isinstance(registry, dict):
            raise ValueError("registry must be an object")
        if not isinstance(queues, dict) or not all(isinstance(q, list) for q in queues.values()):
            raise ValueError("task_queues must map queue names to lists")
        if not isinstance(channels, dict):
            raise ValueError("coordination_channels must be an object")

        task_queues = {name: list(queues.get(name, [])) for name in QUEUE_NAMES}
        return cls(
            session_id=data.get('session_id', 'default'),
            registry=registry,
            task_queues=task_queues,
            performance_metrics=data.get('performance_metrics', {}) or {},
            coordination_channels=channels,
        )

    def iter_tasks(self):
        """Yield (queue_name, task) pairs in queue order."""
        for name in QUEUE_NAMES:
            for task in self.task_queues.get(name, []):
                yield name, task

    def referenced_agents(self) -> Dict[str, List[str]]:
        """Map each referenced agent id to the places that reference it."""
        refs: Dict[str, List[str]] = {}
        for channel_id, channel in self.coordination_channels.items():
            participants = channel.get('participants', []) if isinstance(channel, dict) else []
            if not isinstance(participants, list):
                continue
            for agent_id in participants:
                if isinstance(agent_id, str):
                    refs.setdefault(agent_id, []).append(f"channel '{channel_id}'")
        for queue, task in self.iter_tasks():
            if isinstance(task, dict) and isinstance(task.get('assigned_to'), str) and task['assigned_to']:
                refs.setdefault(task['assigned_to'], []).append(
                    f"task '{task.get('id')}' in {queue}"
                )
        return refs


@dataclass
class GlobalMemory:
    """Shared knowledge plus system configuration."""
    knowledge: Dict[str, Any] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'GlobalMemory':
        if not isinstance(data, dict):
            raise ValueError("global memory must be an object")
        knowledge = data.get('knowledge', {})
        config = data.get('config', {})
        if not isinstance(knowledge, dict) or not isinstance(config, dict):
            raise ValueError("knowledge and config must be objects")
        return cls(knowledge=knowledge, config=config)


@dataclass
class StateModel:
    """In-memory model of every tracked structure as of a single read."""
    agents: Dict[str, AgentRecord] = field(default_factory=dict)
    session: Optional[SessionState] = None
    global_memory: Optional[GlobalMemory] = None
    malformed: Dict[str, str] = field(default_factory=dict)
    raw_malformed: Dict[str, str] = field(default_factory=dict)
    epoch: int = 0

    @property
    def malformed_agents(self) -> List[str]:
        return [location.split(':', 1)[1] for location in self.malformed if location.startswith('agent:')]

    @property
    def missing_components(self) -> List[str]:
        missing = []
        if not self.agents and not self.malformed_agents and 'agents' not in self.malformed:
            missing.append('agents')
        if self.session is None and 'session' not in self.malformed:
            missing.append('session')
        if self.global_memory is None and 'global' not in self.malformed:
            missing.append('global')
        return missing

    @property
    def is_empty(self) -> bool:
        return len(self.missing_components) == 3

    def to_payload(self) -> Dict:
        return {
            'agents': {agent_id: record.to_dict() for agent_id, record in self.agents.items()},
            'session': self.session.to_dict() if self.session else None,
            'global_memory': self.global_memory.to_dict() if self.global_memory else None,
            'raw_malformed': dict(self.raw_malformed),
        }

    @classmethod
    def from_payload(cls, payload: Dict) -> 'StateModel':
        agents = {
            agent_id: AgentRecord.from_dict(data)
            for agent_id, data in (payload.get('agents') or {}).items()
        }
        session = payload.get('session')
        global_memory = payload.get('global_memory')
        raw_malformed = dict(payload.get('raw_malformed') or {})
        return cls(
            agents=agents,
            session=SessionState.from_dict(session) if session is not None else None,
            global_memory=GlobalMemory.from_dict(global_memory) if global_memory is not None else None,
            malformed={location: 'malformed at capture time' for location in raw_malformed},
            raw_malformed=raw_malformed,
        )


@dataclass
class CheckResult:
    """Outcome of one consistency check."""
    check_id: str
    passed: bool
    detail: str
    ratio: float = 1.0
    weight: float = 1.0
    critical: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ConsistencyReport:
    """Result of a consistency analysis. Never persisted on its own."""
    per_check_results: List[CheckResult]
    overall_score: float
    issues: List[str]
    generated_at: str
    accessor_error: Optional[str] = None
    missing_components: List[str] = field(default_factory=list)
    stale_agents: List[str] = field(default_factory=list)
    malformed_agents: List[str] = field(default_factory=list)
    analysis_ms: float = 0.0
    healthy_threshold: float = 0.9
    degraded_threshold: float = 0.5

    @property
    def failed_checks(self) -> List[str]:
        return [r.check_id for r in self.per_check_results if not r.passed]

    @property
    def critical_failures(self) -> List[str]:
        return [r.check_id for r in self.per_check_results if r.critical and not r.passed]

    @property
    def status(self) -> HealthStatus:
        if self.accessor_error or self.critical_failures:
            return HealthStatus.CRITICAL
        if self.overall_score >= self.healthy_threshold:
            return HealthStatus.HEALTHY
        if self.overall_score >= self.degraded_threshold:
            return HealthStatus.DEGRADED
        return HealthStatus.CRITICAL

    def check(self, check_id: str) -> Optional[CheckResult]:
        for result in self.per_check_results:
            if result.check_id == check_id:
                return result
        return None

    def to_dict(self) -> Dict:
        return {
            'per_check_results': [r.to_dict() for r in self.per_check_results],
            'overall_score': self.overall_score,
            'issues': list(self.issues),
            'generated_at': self.generated_at,
            'accessor_error': self.accessor_error,
            'missing_components': list(self.missing_components),
            'stale_agents': list(self.stale_agents),
            'malformed_agents': list(self.malformed_agents),
            'analysis_ms': self.analysis_ms,
            'status': self.status.value,
        }


@dataclass
class ValidationOutcome:
    """Pass/fail verdict over a consistency report."""
    valid: bool
    score: float
    issues: List[str]
    failed_checks: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass
class HealthReport:
    """Health derived from one consistency analysis."""
    timestamp: str
    status: HealthStatus
    consistency: ConsistencyReport
    auto_recovery_triggered: bool = False
    recovery_id: Optional[str] = None
    backup_snapshot_id: Optional[str] = None

    @classmethod
    def from_report(cls, report: ConsistencyReport, timestamp: Optional[str] = None) -> 'HealthReport':
        return cls(
            timestamp=timestamp or report.generated_at,
            status=report.status,
            consistency=report,
        )

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp,
            'status': self.status.value,
            'consistency': self.consistency.to_dict(),
            'auto_recovery_triggered': self.auto_recovery_triggered,
            'recovery_id': self.recovery_id,
            'backup_snapshot_id': self.backup_snapshot_id,
        }


@dataclass(frozen=True)
class Snapshot:
    """Immutable, integrity-checked copy of all tracked state."""
    snapshot_id: str
    timestamp: str
    reason: str
    payload: str
    integrity_hash: str
    schema_version: int = SCHEMA_VERSION
    sequence: int = 0
    health: Dict[str, Any] = field(default_factory=dict)

    def verify(self) -> bool:
        return sha256_hex(self.payload) == self.integrity_hash

    def state(self) -> StateModel:
        return StateModel.from_payload(json.loads(self.payload))

    def to_artifact(self) -> Dict:
        return {
            'snapshot_id': self.snapshot_id,
            'timestamp': self.timestamp,
            'reason': self.reason,
            'schema_version': self.schema_version,
            'sequence': self.sequence,
            'integrity_hash': self.integrity_hash,
            'health': dict(self.health),
            'payload': self.payload,
        }

    @classmethod
    def from_artifact(cls, data: Dict) -> 'Snapshot':
        return cls(
            snapshot_id=data['snapshot_id'],
            timestamp=data['timestamp'],
            reason=data.get('reason', ''),
            payload=data['payload'],
            integrity_hash=data['integrity_hash'],
            schema_version=data.get('schema_version', SCHEMA_VERSION),
            sequence=data.get('sequence', 0),
            health=data.get('health') or {},
        )


@dataclass
class RestoreResult:
    """Outcome of restoring a snapshot into live state."""
    success: bool
    snapshot_id: Optional[str] = None
    error: Optional[str] = None
    message: str = ""
    restored_agents: List[str] = field(default_factory=list)
    session_restored: bool = False
    global_restored: bool = False
    consistency_score: Optional[float] = None

    def to_dict(self) -> Dict:
        return asdict(self)
