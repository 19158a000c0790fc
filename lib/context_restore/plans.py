"""Built-in recovery plans, validation routines and plan checking."""

from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .constants import CheckIds, SCENARIO_TIMEOUTS
from .errors import AccessorUnavailable
from .models import ConsistencyReport, HealthReport
from .recovery import (
    FailureMode,
    RecoveryPlan,
    RecoveryStep,
    ScenarioType,
    StepAction,
    ValidationCheck,
    ValidationType,
)
from .security import get_logger

logger = get_logger(__name__)

ValidationRoutine = Callable[[ConsistencyReport, Any, Dict[str, Any]], Tuple[bool, str]]


# === Validation routines ===

def _check_passed(report: ConsistencyReport, accessor, criteria: Dict[str, Any]) -> Tuple[bool, str]:
    check_id = criteria['check']
    result = report.check(check_id)
    if result is None:
        return False, f"{check_id} not evaluated"
    return result.passed, result.detail


def _min_score(report: ConsistencyReport, accessor, criteria: Dict[str, Any]) -> Tuple[bool, str]:
    threshold = criteria.get('min_score', 0.9)
    return report.overall_score >= threshold, f"score {report.overall_score:.2f} (minimum {threshold})"


def _agents_reachable(report: ConsistencyReport, accessor, criteria: Dict[str, Any]) -> Tuple[bool, str]:
    allowed = criteria.get('max_unreachable', 0)
    stale = report.stale_agents
    return len(stale) <= allowed, f"{len(stale)} unreachable agents (allowed {allowed})"


def _state_present(report: ConsistencyReport, accessor, criteria: Dict[str, Any]) -> Tuple[bool, str]:
    if report.accessor_error:
        return False, report.accessor_error
    missing = report.missing_components
    if missing:
        return False, f"missing: {', '.join(missing)}"
    return True, "all state structures present"


def _analysis_latency(report: ConsistencyReport, accessor, criteria: Dict[str, Any]) -> Tuple[bool, str]:
    limit = criteria.get('max_ms', 5000)
    return report.analysis_ms <= limit, f"analysis took {report.analysis_ms:.1f}ms (limit {limit}ms)"


def _storage_roundtrip(report: ConsistencyReport, accessor, criteria: Dict[str, Any]) -> Tuple[bool, str]:
    try:
        accessor.ping()
    except AccessorUnavailable as e:
        return False, str(e)
    return True, "storage reachable"


VALIDATION_ROUTINES: Dict[str, ValidationRoutine] = {
    'check_passed': _check_passed,
    'min_score': _min_score,
    'agents_reachable': _agents_reachable,
    'state_present': _state_present,
    'analysis_latency': _analysis_latency,
    'storage_roundtrip': _storage_roundtrip,
}


def run_validation(check: ValidationCheck, report: ConsistencyReport, accessor) -> Tuple[bool, str]:
    """Run the routine a ValidationCheck names against a report."""
    routine = VALIDATION_ROUTINES[check.validation]
    return routine(report, accessor, check.pass_criteria)


# === Success criteria ===

def criteria_context(report: ConsistencyReport, health: HealthReport) -> Dict[str, Any]:
    """Names available to success criteria expressions."""
    return {
        'score': report.overall_score,
        'status': health.status.value,
        'critical_failures': len(report.critical_failures),
        'failed_checks': report.failed_checks,
        'issues': len(report.issues),
        'stale_agents': len(report.stale_agents),
        'missing_components': len(report.missing_components),
        'accessor_ok': report.accessor_error is None,
    }


def evaluate_criterion(criterion: str, context: Mapping[str, Any]) -> bool:
    """Evaluate a success criterion such as ``score >= 0.9``."""
    try:
        return bool(eval(criterion, {"__builtins__": {}}, dict(context)))
    except Exception as e:
        logger.warning("Success criterion %r could not be evaluated: %s", criterion, e)
        return False


# === Plan checking ===

def order_steps(steps: List[RecoveryStep]) -> List[RecoveryStep]:
    """Topologically order steps; declaration order breaks ties.

    Raises:
        ValueError: on duplicate ids, unknown dependencies or cycles
    """
    ids = [step.id for step in steps]
    if len(set(ids)) != len(ids):
        raise ValueError(f"Duplicate step ids in {ids}")

    known = set(ids)
    for step in steps:
        for dep in step.dependencies:
            if dep not in known:
                raise ValueError(f"Step '{step.id}' depends on unknown step '{dep}'")

    ordered: List[RecoveryStep] = []
    placed = set()
    remaining = list(steps)
    while remaining:
        for step in remaining:
            if all(dep in placed for dep in step.dependencies):
                ordered.append(step)
                placed.add(step.id)
                remaining.remove(step)
                break
        else:
            raise ValueError(f"Dependency cycle among steps {[s.id for s in remaining]}")
    return ordered


def effective_failure_mode(step: RecoveryStep, plan: RecoveryPlan) -> FailureMode:
    """A validate step bound to a critical check always rolls back."""
    if step.action == StepAction.VALIDATE.value:
        check = plan.get_check(step.parameters.get('check', ''))
        if check is not None and check.critical:
            return FailureMode.ROLLBACK
    return FailureMode(step.failure_mode)


def validate_plan(plan: RecoveryPlan) -> None:
    """Reject plans the step engine cannot run.

    Raises:
        ValueError: describing the first problem found
    """
    ScenarioType(plan.scenario)
    order_steps(plan.steps)
    order_steps(plan.rollback_steps)

    for step in plan.steps + plan.rollback_steps:
        StepAction(step.action)
        FailureMode(step.failure_mode)
        if step.timeout <= 0:
            raise ValueError(f"Step '{step.id}' timeout must be positive")
        if step.retry_count < 0:
            raise ValueError(f"Step '{step.id}' retry_count must not be negative")
        bound = step.parameters.get('check')
        if step.action == StepAction.VALIDATE.value and bound and plan.get_check(bound) is None:
            raise ValueError(f"Step '{step.id}' is bound to unknown check '{bound}'")

    for step in plan.rollback_steps:
        if step.dependencies:
            raise ValueError(f"Rollback step '{step.id}' cannot declare dependencies")

    for check in plan.validation_checks:
        ValidationType(check.type)
        if check.validation not in VALIDATION_ROUTINES:
            raise ValueError(f"Check '{check.id}' names unknown routine '{check.validation}'")


# === Built-in plans ===

def _step(step_id: str, action: StepAction, timeout: float, failure_mode: FailureMode,
          description: str = "", dependencies: Optional[List[str]] = None,
          retry_count: int = 0, **parameters) -> RecoveryStep:
    return RecoveryStep(
        id=step_id,
        action=action.value,
        description=description,
        parameters=parameters,
        timeout=timeout,
        retry_count=retry_count,
        failure_mode=failure_mode.value,
        dependencies=dependencies or [],
    )


def _check(check_id: str, check_type: ValidationType, validation: str,
           description: str, critical: bool = False, **criteria) -> ValidationCheck:
    return ValidationCheck(
        id=check_id,
        type=check_type.value,
        validation=validation,
        description=description,
        pass_criteria=criteria,
        critical=critical,
    )


def _registry_check() -> ValidationCheck:
    return _check('registry_consistent', ValidationType.CONSISTENCY, 'check_passed',
                  "Every referenced agent is registered", critical=True,
                  check=CheckIds.REGISTRY_CONSISTENCY)


def _storage_check() -> ValidationCheck:
    return _check('storage_reachable', ValidationType.FUNCTIONALITY, 'storage_roundtrip',
                  "Storage answers after recovery", critical=True)


def _agent_failure_plan(timeout: float) -> RecoveryPlan:
    return RecoveryPlan(
        scenario=ScenarioType.AGENT_FAILURE.value,
        description="Reinitialize an unreachable agent from its role spec",
        steps=[
            _step('backup', StepAction.BACKUP, timeout, FailureMode.ESCALATE,
                  "Snapshot state before touching the agent", reason='pre-agent-recovery'),
            _step('reinitialize', StepAction.REINITIALIZE, timeout, FailureMode.ROLLBACK,
                  "Write a baseline record for the failed agent", ['backup'],
                  retry_count=1, agents='affected'),
            _step('validate', StepAction.VALIDATE, timeout, FailureMode.ROLLBACK,
                  "Confirm the agent is reachable again", ['reinitialize'],
                  check='registry_consistent', max_stale=0),
            _step('notify', StepAction.NOTIFY, timeout, FailureMode.CONTINUE,
                  "Report the recovered agent", ['validate']),
        ],
        rollback_steps=[
            _step('restore_backup', StepAction.RESTORE, timeout, FailureMode.CONTINUE,
                  "Return to the pre-recovery snapshot", source='run_backup'),
        ],
        validation_checks=[
            _registry_check(),
            _check('agents_reachable', ValidationType.FUNCTIONALITY, 'agents_reachable',
                   "No registered agent is unreachable", max_unreachable=0),
            _storage_check(),
        ],
        success_criteria=["score >= 0.9", "stale_agents == 0"],
    )


def _session_corruption_plan(timeout: float) -> RecoveryPlan:
    return RecoveryPlan(
        scenario=ScenarioType.SESSION_CORRUPTION.value,
        description="Repair dangling references in the shared session",
        steps=[
            _step('backup', StepAction.BACKUP, timeout, FailureMode.ESCALATE,
                  "Snapshot state before repairing the session", reason='pre-session-repair'),
            _step('repair_session', StepAction.REPAIR, timeout, FailureMode.ROLLBACK,
                  "Re-register or drop dangling agents and fix task queues", ['backup'],
                  retry_count=2, targets=['session', 'timestamps']),
            _step('validate', StepAction.VALIDATE, timeout, FailureMode.ROLLBACK,
                  "Confirm the registry and cross references hold", ['repair_session'],
                  check='registry_consistent', min_score=0.9,
                  required_checks=[CheckIds.REGISTRY_CONSISTENCY, CheckIds.CROSS_REFERENCE]),
            _step('notify', StepAction.NOTIFY, timeout, FailureMode.CONTINUE,
                  "Report the session repair", ['validate']),
        ],
        rollback_steps=[
            _step('restore_backup', StepAction.RESTORE, timeout, FailureMode.CONTINUE,
                  "Return to the pre-repair snapshot", source='run_backup'),
        ],
        validation_checks=[
            _registry_check(),
            _check('cross_references_valid', ValidationType.CONSISTENCY, 'check_passed',
                   "Task descriptors reference known tasks and agents",
                   check=CheckIds.CROSS_REFERENCE),
            _storage_check(),
        ],
        success_criteria=["score >= 0.9", "critical_failures == 0"],
    )


def _memory_corruption_plan(timeout: float) -> RecoveryPlan:
    return RecoveryPlan(
        scenario=ScenarioType.MEMORY_CORRUPTION.value,
        description="Coerce malformed memory banks back into schema",
        steps=[
            _step('backup', StepAction.BACKUP, timeout, FailureMode.CONTINUE,
                  "Snapshot the corrupted state for later inspection", reason='pre-memory-repair'),
            _step('repair_memory', StepAction.REPAIR, timeout, FailureMode.CONTINUE,
                  "Schema-guided coercion of memory banks", retry_count=1, targets=['memory']),
            _step('validate', StepAction.VALIDATE, timeout, FailureMode.ROLLBACK,
                  "Confirm every memory bank is well-formed", ['repair_memory'],
                  check='memory_intact', required_checks=[CheckIds.MEMORY_INTEGRITY]),
            _step('notify', StepAction.NOTIFY, timeout, FailureMode.CONTINUE,
                  "Report the memory repair", ['validate']),
        ],
        rollback_steps=[
            _step('restore_healthy', StepAction.RESTORE, timeout, FailureMode.CONTINUE,
                  "Fall back to the last healthy snapshot", source='latest_healthy'),
        ],
        validation_checks=[
            _check('memory_intact', ValidationType.INTEGRITY, 'check_passed',
                   "Every memory bank matches its schema", critical=True,
                   check=CheckIds.MEMORY_INTEGRITY),
            _check('analysis_latency', ValidationType.PERFORMANCE, 'analysis_latency',
                   "Analysis completes promptly", max_ms=5000),
        ],
        success_criteria=["'memory_integrity' not in failed_checks", "score >= 0.8"],
    )


def _partial_loss_plan(timeout: float) -> RecoveryPlan:
    return RecoveryPlan(
        scenario=ScenarioType.PARTIAL_LOSS.value,
        description="Restore lost structures from the last healthy snapshot",
        steps=[
            _step('backup', StepAction.BACKUP, timeout, FailureMode.CONTINUE,
                  "Snapshot what survived", reason='pre-partial-restore'),
            _step('restore', StepAction.RESTORE, timeout, FailureMode.ROLLBACK,
                  "Restore the last healthy snapshot", source='latest_healthy'),
            _step('reinitialize', StepAction.REINITIALIZE, timeout, FailureMode.CONTINUE,
                  "Reinitialize agents still unreachable after restore", ['restore'],
                  agents='unreachable'),
            _step('validate', StepAction.VALIDATE, timeout, FailureMode.ROLLBACK,
                  "Confirm all structures are back", ['restore'],
                  check='state_present', min_score=0.8),
            _step('notify', StepAction.NOTIFY, timeout, FailureMode.CONTINUE,
                  "Report the partial restore", ['validate']),
        ],
        rollback_steps=[
            _step('restore_backup', StepAction.RESTORE, timeout, FailureMode.CONTINUE,
                  "Return to the surviving state", source='run_backup'),
        ],
        validation_checks=[
            _check('state_present', ValidationType.INTEGRITY, 'state_present',
                   "Agents, session and global memory all exist", critical=True),
            _registry_check(),
            _check('agents_reachable', ValidationType.FUNCTIONALITY, 'agents_reachable',
                   "Registered agents are reachable", max_unreachable=0),
        ],
        success_criteria=["score >= 0.8", "critical_failures == 0"],
    )


def _complete_loss_plan(timeout: float) -> RecoveryPlan:
    return RecoveryPlan(
        scenario=ScenarioType.COMPLETE_LOSS.value,
        description="Rebuild all state from the last healthy snapshot",
        steps=[
            _step('restore', StepAction.RESTORE, timeout, FailureMode.ESCALATE,
                  "Restore the last healthy snapshot", retry_count=2, source='latest_healthy'),
            _step('validate', StepAction.VALIDATE, timeout, FailureMode.ROLLBACK,
                  "Confirm the restored state is healthy", ['restore'],
                  check='state_present', min_score=0.9),
            _step('notify', StepAction.NOTIFY, timeout, FailureMode.CONTINUE,
                  "Report the full restore", ['validate']),
        ],
        validation_checks=[
            _check('state_present', ValidationType.INTEGRITY, 'state_present',
                   "Agents, session and global memory all exist", critical=True),
            _storage_check(),
            _registry_check(),
        ],
        success_criteria=["status == 'healthy'"],
    )


_PLAN_BUILDERS: Dict[ScenarioType, Callable[[float], RecoveryPlan]] = {
    ScenarioType.AGENT_FAILURE: _agent_failure_plan,
    ScenarioType.SESSION_CORRUPTION: _session_corruption_plan,
    ScenarioType.MEMORY_CORRUPTION: _memory_corruption_plan,
    ScenarioType.PARTIAL_LOSS: _partial_loss_plan,
    ScenarioType.COMPLETE_LOSS: _complete_loss_plan,
}


def build_default_plans(timeouts: Optional[Mapping[str, float]] = None) -> List[RecoveryPlan]:
    """One plan per scenario, step timeouts taken from the scenario's expected recovery time."""
    missing = set(ScenarioType) - set(_PLAN_BUILDERS)
    if missing:
        raise ValueError(f"No built-in plan for scenarios: {sorted(s.value for s in missing)}")
    timeouts = dict(SCENARIO_TIMEOUTS, **(timeouts or {}))
    return [builder(timeouts[scenario.value]) for scenario, builder in _PLAN_BUILDERS.items()]
