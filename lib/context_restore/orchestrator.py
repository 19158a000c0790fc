"""Recovery Orchestrator - classifies failures and runs recovery plans."""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .actions import ActionHandlers, RunContext
from .constants import CheckIds, Defaults, RedisKeys
from .errors import (
    AccessorUnavailable,
    CriticalValidationFailed,
    MalformedStructure,
    RecoveryAlreadyInProgress,
    RecoveryEscalated,
    StepFailed,
    StepTimeout,
    error_code,
)
from .models import ConsistencyReport, HealthReport, utcnow
from .plans import (
    build_default_plans,
    criteria_context,
    effective_failure_mode,
    evaluate_criterion,
    order_steps,
    run_validation,
    validate_plan,
)
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
    StepResult,
    ValidationResult,
)
from .security import get_logger
from .telemetry import RecoveryMetrics, get_metrics

logger = get_logger(__name__)

SESSION_CHECKS = (
    CheckIds.REGISTRY_CONSISTENCY,
    CheckIds.CROSS_REFERENCE,
    CheckIds.TIMESTAMP_CONSISTENCY,
)


def classify(report: ConsistencyReport) -> Optional[FailureScenario]:
    """Map a report to a failure scenario; None when there is nothing to recover.

    Precedence, first match wins:
    1. storage unreachable or all structures missing -> complete_loss
    2. some structures missing, or two or more unreachable agents -> partial_loss
    3. memory_integrity failed -> memory_corruption
    4. registry, cross-reference or timestamp check failed -> session_corruption
    5. exactly one unreachable agent -> agent_failure
    """
    failed = set(report.failed_checks)
    stale = report.stale_agents
    missing = report.missing_components

    if report.accessor_error or len(missing) == 3:
        return FailureScenario(
            type=ScenarioType.COMPLETE_LOSS.value,
            severity=Severity.CRITICAL.value,
            affected_components=['agents', 'session', 'global'],
            details={'reason': report.accessor_error or 'all state missing'},
        )
    if missing or len(stale) >= 2:
        return FailureScenario(
            type=ScenarioType.PARTIAL_LOSS.value,
            severity=Severity.HIGH.value,
            affected_components=list(missing) or ['agents'],
            details={'agents': list(stale), 'missing': list(missing)},
        )
    if CheckIds.MEMORY_INTEGRITY in failed:
        return FailureScenario(
            type=ScenarioType.MEMORY_CORRUPTION.value,
            severity=Severity.HIGH.value if len(report.malformed_agents) > 1 else Severity.MEDIUM.value,
            affected_components=['agents'] if report.malformed_agents else ['global'],
            details={'agents': list(report.malformed_agents)},
        )
    if failed & set(SESSION_CHECKS):
        return FailureScenario(
            type=ScenarioType.SESSION_CORRUPTION.value,
            severity=Severity.HIGH.value if CheckIds.REGISTRY_CONSISTENCY in failed else Severity.MEDIUM.value,
            affected_components=['session'],
            details={'failed_checks': sorted(failed & set(SESSION_CHECKS))},
        )
    if len(stale) == 1:
        return FailureScenario(
            type=ScenarioType.AGENT_FAILURE.value,
            severity=Severity.MEDIUM.value,
            affected_components=['agents'],
            details={'agents': list(stale)},
        )
    return None


class RecoveryOrchestrator:
    """Interprets RecoveryPlans.

    Forward steps and rollback steps run through the same engine. At most
    one run is active at a time; a concurrent call returns at once with
    ``error == "recovery_already_in_progress"``.
    """

    def __init__(
        self,
        accessor,
        analyzer,
        snapshots,
        lock,
        notifier=None,
        metrics: Optional[RecoveryMetrics] = None,
        clock: Callable[[], datetime] = utcnow,
        step_timeouts: Optional[Dict[str, float]] = None,
        history_limit: int = Defaults.HISTORY_LIMIT
    ):
        self.accessor = accessor
        self.analyzer = analyzer
        self.snapshots = snapshots
        self.lock = lock
        self.metrics = metrics or get_metrics()
        self.clock = clock
        self.step_timeouts = step_timeouts
        self.history_limit = history_limit
        self.actions = ActionHandlers(accessor, snapshots, analyzer, notifier, clock)
        self._plans: Dict[ScenarioType, RecoveryPlan] = {}
        for plan in build_default_plans(step_timeouts):
            self.register_plan(plan)

    # === Plans ===

    @property
    def plans(self) -> Dict[ScenarioType, RecoveryPlan]:
        return dict(self._plans)

    def register_plan(self, plan: RecoveryPlan) -> None:
        """Bind a plan to its scenario, replacing any previous one.

        Raises:
            ValueError: if the plan has cycles, unknown dependencies or unknown names
        """
        validate_plan(plan)
        self._plans[ScenarioType(plan.scenario)] = plan

    def initialize_recovery_workflows(self) -> List[str]:
        """(Re)register the five built-in plans and persist them. Idempotent."""
        self._plans = {}
        for plan in build_default_plans(self.step_timeouts):
            self.register_plan(plan)

        try:
            self.accessor.replace_documents(RedisKeys.RECOVERY_PLANS, {
                scenario.value: plan.to_dict() for scenario, plan in self._plans.items()
            })
        except AccessorUnavailable as e:
            logger.warning("Recovery plans registered in memory only: %s", e)

        logger.info("Registered %d recovery workflows", len(self._plans))
        return [scenario.value for scenario in self._plans]

    def load_persisted_plans(self) -> Dict[str, RecoveryPlan]:
        """Read back the plans stored in Redis."""
        documents = self.accessor.read_documents(RedisKeys.RECOVERY_PLANS)
        return {scenario: RecoveryPlan.from_dict(data) for scenario, data in documents.items()}

    # === Execution ===

    def execute_recovery(self, scenario: Any = None) -> RecoveryResult:
        """Run the recovery plan for a scenario, detecting it when omitted.

        Raises:
            RecoveryEscalated: when a step with failure mode ``escalate`` fails
        """
        start = time.time()
        result = RecoveryResult(started_at=self.clock().isoformat())
        result.enter(RecoveryPhase.DETECTING)

        if scenario is None:
            report = self.analyzer.analyze()
            detected = classify(report)
            if detected is None:
                result.success = True
                result.message = "No failure detected; nothing to recover"
                result.final_state = HealthReport.from_report(report)
                result.enter(RecoveryPhase.TERMINAL)
                result.recovery_time = time.time() - start
                return result
            scenario = detected
            logger.info("Detected %s (%s severity)", scenario.type, scenario.severity)
        else:
            scenario = FailureScenario.coerce(scenario)
        result.scenario = scenario

        if not self.lock.acquire(result.recovery_id):
            result.error = RecoveryAlreadyInProgress.code
            result.message = "Another recovery run is in progress"
            result.enter(RecoveryPhase.TERMINAL)
            result.recovery_time = time.time() - start
            logger.warning("Recovery %s rejected: %s", result.recovery_id, result.message)
            return result

        try:
            self._run_plan(scenario, result)
        except RecoveryEscalated as e:
            e.result = result
            result.error = RecoveryEscalated.code
            result.message = str(e)
            result.enter(RecoveryPhase.TERMINAL)
            logger.error("Recovery %s escalated: %s", result.recovery_id, e)
            raise
        finally:
            self.lock.release()
            result.recovery_time = time.time() - start
            self._record(result)

        return result

    def _run_plan(self, scenario: FailureScenario, result: RecoveryResult) -> None:
        plan = self._plans[scenario.scenario_type]
        result.enter(RecoveryPhase.PLAN_SELECTED)
        ctx = RunContext(recovery_id=result.recovery_id, scenario=scenario, plan=plan)

        result.enter(RecoveryPhase.EXECUTING)
        failed = self._run_steps(order_steps(plan.steps), plan, ctx, result)
        if failed is not None:
            result.failed_step = failed.id
            self._rollback(plan, ctx, result)

        result.enter(RecoveryPhase.VALIDATING)
        validations = self._run_validations(plan)
        result.validation_results = validations
        failed_critical = [v.check_id for v in validations if v.critical and not v.passed]

        if failed_critical and not result.rolled_back:
            logger.warning("Critical validation failed: %s", ", ".join(failed_critical))
            result.error = CriticalValidationFailed.code
            result.message = f"Critical validation failed: {', '.join(failed_critical)}"
            self._rollback(plan, ctx, result)
            result.validation_results = self._run_validations(plan)

        report = self.analyzer.analyze()
        health = HealthReport.from_report(report, timestamp=self.clock().isoformat())
        context = criteria_context(report, health)
        result.criteria_results = {
            criterion: evaluate_criterion(criterion, context) for criterion in plan.success_criteria
        }
        result.final_state = health

        result.success = (
            not result.rolled_back
            and not failed_critical
            and all(result.criteria_results.values())
        )
        if result.success:
            result.enter(RecoveryPhase.SUCCEEDED)
            result.message = f"Recovered from {scenario.type}"
        elif result.error is None:
            unmet = [c for c, ok in result.criteria_results.items() if not ok]
            result.error = StepFailed.code if result.failed_step else "success_criteria_unmet"
            result.message = result.message or f"Success criteria not met: {', '.join(unmet)}"
        result.recommendations = self._recommendations(result, report)
        result.enter(RecoveryPhase.TERMINAL)

    def _rollback(self, plan: RecoveryPlan, ctx: RunContext, result: RecoveryResult) -> None:
        result.enter(RecoveryPhase.ROLLING_BACK)
        result.rolled_back = True
        logger.warning("Recovery %s rolling back", ctx.recovery_id)
        self._run_steps(list(reversed(plan.rollback_steps)), plan, ctx, result, rollback=True)

    def _run_steps(
        self,
        steps: List[RecoveryStep],
        plan: RecoveryPlan,
        ctx: RunContext,
        result: RecoveryResult,
        rollback: bool = False
    ) -> Optional[RecoveryStep]:
        """Run steps in order. Returns the step that demands rollback, if any."""
        succeeded = set()
        for step in steps:
            unmet = [dep for dep in step.dependencies if dep not in succeeded]
            if unmet:
                step_result = StepResult(
                    step_id=step.id,
                    action=step.action,
                    success=False,
                    error=StepFailed.code,
                    message=f"Unmet dependencies: {', '.join(unmet)}",
                )
            else:
                step_result = self._execute_step(step, ctx)

            (result.rollback_steps if rollback else result.executed_steps).append(step_result)
            if step_result.success:
                succeeded.add(step.id)
                continue

            result.failed_steps.append(step.id)
            if rollback:
                logger.error("Rollback step %s failed: %s", step.id, step_result.message)
                continue

            mode = effective_failure_mode(step, plan)
            logger.warning("Step %s failed (%s): %s", step.id, mode.value, step_result.message)
            if mode == FailureMode.CONTINUE:
                continue
            if result.error is None:
                result.error = step_result.error
                result.message = step_result.message
            if mode == FailureMode.ROLLBACK:
                return step
            result.failed_step = step.id
            raise RecoveryEscalated(
                f"Step '{step.id}' failed: {step_result.message}",
                result=result,
                step_id=step.id,
            )
        return None

    def _execute_step(self, step: RecoveryStep, ctx: RunContext) -> StepResult:
        handler = self.actions.handler_for(StepAction(step.action))
        start = time.time()
        attempts = 0
        last_error: Optional[BaseException] = None

        for _ in range(step.retry_count + 1):
            attempts += 1
            try:
                output = self._call_with_timeout(handler, step, ctx)
            except StepTimeout as e:
                last_error = e
                break
            except Exception as e:
                last_error = e
                logger.warning("Step %s attempt %d failed: %s", step.id, attempts, e)
                continue

            duration_ms = (time.time() - start) * 1000
            self.metrics.record_step(step.action, True, duration_ms)
            return StepResult(
                step_id=step.id,
                action=step.action,
                success=True,
                attempts=attempts,
                duration_ms=duration_ms,
                output=output or {},
            )

        duration_ms = (time.time() - start) * 1000
        self.metrics.record_step(step.action, False, duration_ms)
        return StepResult(
            step_id=step.id,
            action=step.action,
            success=False,
            attempts=attempts,
            duration_ms=duration_ms,
            error=error_code(last_error),
            message=str(last_error),
        )

    @staticmethod
    def _call_with_timeout(handler, step: RecoveryStep, ctx: RunContext) -> Dict[str, Any]:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"recovery-step-{step.id}")
        future = executor.submit(handler, step, ctx)
        try:
            return future.result(timeout=step.timeout)
        except FutureTimeout:
            ctx.cancelled.set()
            logger.warning("Step %s timed out, waiting for its handler to stop", step.id)
            raise StepTimeout(f"Step '{step.id}' exceeded its {step.timeout}s timeout")
        finally:
            # Joined: a timed-out handler never outlives its step.
            executor.shutdown(wait=True)
            ctx.cancelled.clear()

    def _run_validations(self, plan: RecoveryPlan) -> List[ValidationResult]:
        report = self.analyzer.analyze()
        results = []
        for check in plan.validation_checks:
            passed, detail = run_validation(check, report, self.accessor)
            results.append(ValidationResult(check.id, passed, check.critical, detail))
        return results

    @staticmethod
    def _recommendations(result: RecoveryResult, report: ConsistencyReport) -> List[str]:
        recommendations = []
        if result.rolled_back:
            recommendations.append("State was rolled back; inspect the failed step before retrying")
        if report.accessor_error:
            recommendations.append("Restore storage connectivity before retrying recovery")
        if report.stale_agents:
            recommendations.append(f"Restart unreachable agents: {', '.join(report.stale_agents)}")
        if report.critical_failures:
            recommendations.append(f"Resolve critical failures: {', '.join(report.critical_failures)}")
        if not result.success and not recommendations:
            recommendations.append("Review the recovery history and consider a manual restore")
        return recommendations

    # === History ===

    def _record(self, result: RecoveryResult) -> None:
        scenario = result.scenario.type if result.scenario else 'none'
        self.metrics.record_recovery(scenario, result.success, result.recovery_time * 1000)
        try:
            self.accessor.append_history(RedisKeys.RECOVERY_HISTORY, result.summary(), self.history_limit)
        except (AccessorUnavailable, MalformedStructure) as e:
            logger.warning("Recovery %s not written to history: %s", result.recovery_id, e)

    def get_recovery_status(self) -> Dict[str, Any]:
        """Totals and the last run from the recovery history."""
        status = {
            'in_progress': self.lock.is_locked(),
            'registered_plans': sorted(scenario.value for scenario in self._plans),
        }
        try:
            history = self.accessor.read_history(RedisKeys.RECOVERY_HISTORY)
        except (AccessorUnavailable, MalformedStructure) as e:
            status['error'] = str(e)
            return status

        successes = sum(1 for entry in history if entry.get('success'))
        status.update({
            'total_runs': len(history),
            'successful_runs': successes,
            'failed_runs': len(history) - successes,
            'last_run': history[-1] if history else None,
        })
        return status
