"""Recovery workflow types: scenarios, plans, steps and run results."""

import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from .models import HealthReport, utcnow


class ScenarioType(Enum):
    AGENT_FAILURE = "agent_failure"
    SESSION_CORRUPTION = "session_corruption"
    MEMORY_CORRUPTION = "memory_corruption"
    PARTIAL_LOSS = "partial_loss"
    COMPLETE_LOSS = "complete_loss"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class StepAction(Enum):
    BACKUP = "backup"
    RESTORE = "restore"
    VALIDATE = "validate"
    REINITIALIZE = "reinitialize"
    REPAIR = "repair"
    NOTIFY = "notify"


class FailureMode(Enum):
    CONTINUE = "continue"
    ROLLBACK = "rollback"
    ESCALATE = "escalate"


class ValidationType(Enum):
    INTEGRITY = "integrity"
    CONSISTENCY = "consistency"
    PERFORMANCE = "performance"
    FUNCTIONALITY = "functionality"


class RecoveryPhase(Enum):
    DETECTING = "detecting"
    PLAN_SELECTED = "plan_selected"
    EXECUTING = "executing"
    VALIDATING = "validating"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    TERMINAL = "terminal"


@dataclass
class FailureScenario:
    """A classified failure and what it touches."""
    type: str
    severity: str = Severity.MEDIUM.value
    affected_components: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def scenario_type(self) -> ScenarioType:
        return ScenarioType(self.type)

    @property
    def affected_agents(self) -> List[str]:
        return list(self.details.get('agents', []))

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'FailureScenario':
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @classmethod
    def coerce(cls, value: Any) -> 'FailureScenario':
        """Accept a FailureScenario, a ScenarioType or a scenario name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, ScenarioType):
            return cls(type=value.value)
        if isinstance(value, str):
            return cls(type=ScenarioType(value).value)
        if isinstance(value, dict):
            return cls.from_dict(value)
        raise ValueError(f"cannot interpret {value!r} as a failure scenario")


@dataclass
class RecoveryStep:
    """One action in a recovery plan."""
    id: str
    action: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    timeout: float = 30.0
    retry_count: int = 0
    failure_mode: str = FailureMode.CONTINUE.value
    dependencies: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'RecoveryStep':
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class ValidationCheck:
    """Post-run check bound to a named validation routine."""
    id: str
    type: str
    validation: str
    description: str = ""
    pass_criteria: Dict[str, Any] = field(default_factory=dict)
    critical: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'ValidationCheck':
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class RecoveryPlan:
    """The scripted recovery for one scenario."""
    scenario: str
    steps: List[RecoveryStep]
    rollback_steps: List[RecoveryStep] = field(default_factory=list)
    validation_checks: List[ValidationCheck] = field(default_factory=list)
    success_criteria: List[str] = field(default_factory=list)
    description: str = ""

    def get_check(self, check_id: str) -> Optional[ValidationCheck]:
        for check in self.validation_checks:
            if check.id == check_id:
                return check
        return None

    def to_dict(self) -> Dict:
        return {
            'scenario': self.scenario,
            'description': self.description,
            'steps': [s.to_dict() for s in self.steps],
            'rollback_steps': [s.to_dict() for s in self.rollback_steps],
            'validation_checks': [c.to_dict() for c in self.validation_checks],
            'success_criteria': list(self.success_criteria),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'RecoveryPlan':
        return cls(
            scenario=data['scenario'],
            description=data.get('description', ''),
            steps=[RecoveryStep.from_dict(s) for s in data.get('steps', [])],
            rollback_steps=[RecoveryStep.from_dict(s) for s in data.get('rollback_steps', [])],
            validation_checks=[ValidationCheck.from_dict(c) for c in data.get('validation_checks', [])],
            success_criteria=list(data.get('success_criteria', [])),
        )


@dataclass
class StepResult:
    step_id: str
    action: str
    success: bool
    attempts: int = 0
    duration_ms: float = 0.0
    error: Optional[str] = None
    message: str = ""
    output: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ValidationResult:
    check_id: str
    passed: bool
    critical: bool
    detail: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class RecoveryResult:
    """Structured outcome of one recovery run."""
    recovery_id: str = field(default_factory=lambda: f"rec-{uuid.uuid4().hex[:12]}")
    success: bool = False
    scenario: Optional[FailureScenario] = None
    phases: List[str] = field(default_factory=list)
    executed_steps: List[StepResult] = field(default_factory=list)
    failed_steps: List[str] = field(default_factory=list)
    rollback_steps: List[StepResult] = field(default_factory=list)
    validation_results: List[ValidationResult] = field(default_factory=list)
    criteria_results: Dict[str, bool] = field(default_factory=dict)
    error: Optional[str] = None
    failed_step: Optional[str] = None
    rolled_back: bool = False
    started_at: str = field(default_factory=lambda: utcnow().isoformat())
    recovery_time: float = 0.0
    final_state: Optional[HealthReport] = None
    recommendations: List[str] = field(default_factory=list)
    message: str = ""

    def enter(self, phase: RecoveryPhase) -> None:
        self.phases.append(phase.value)

    @property
    def phase(self) -> Optional[str]:
        return self.phases[-1] if self.phases else None

    def summary(self) -> Dict:
        """Compact form kept in the recovery history."""
        return {
            'recovery_id': self.recovery_id,
            'scenario': self.scenario.type if self.scenario else None,
            'success': self.success,
            'error': self.error,
            'failed_step': self.failed_step,
            'rolled_back': self.rolled_back,
            'started_at': self.started_at,
            'recovery_time': self.recovery_time,
            'final_status': self.final_state.status.value if self.final_state else None,
        }

    def to_dict(self) -> Dict:
        return {
            'recovery_id': self.recovery_id,
            'success': self.success,
            'scenario': self.scenario.to_dict() if self.scenario else None,
            'phases': list(self.phases),
            'executed_steps': [s.to_dict() for s in self.executed_steps],
            'failed_steps': list(self.failed_steps),
            'rollback_steps': [s.to_dict() for s in self.rollback_steps],
            'validation_results': [v.to_dict() for v in self.validation_results],
            'criteria_results': dict(self.criteria_results),
            'error': self.error,
            'failed_step': self.failed_step,
            'rolled_back': self.rolled_back,
            'started_at': self.started_at,
            'recovery_time': self.recovery_time,
            'final_state': self.final_state.to_dict() if self.final_state else None,
            'recommendations': list(self.recommendations),
            'message': self.message,
        }
