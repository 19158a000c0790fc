"""Consistency Analyzer - scores how well persisted state holds together."""

import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from .constants import CheckIds, Defaults
from .errors import AccessorUnavailable
from .models import (
    CheckResult,
    ConsistencyReport,
    StateModel,
    parse_timestamp,
    utcnow,
)
from .schema import validate_global_memory, validate_record
from .security import get_logger
from .telemetry import RecoveryMetrics, get_metrics

logger = get_logger(__name__)

CheckOutcome = Tuple[CheckResult, List[str]]


class ConsistencyAnalyzer:
    """Builds the in-memory model and computes a ConsistencyReport.

    Checks, in report order:

    ======================  ======  ========
    check                   weight  critical
    ======================  ======  ========
    registry_consistency    3.0     yes
    memory_integrity        1.0     no
    timestamp_consistency   1.0     no
    cross_reference         1.0     no
    heartbeat_freshness     1.0     no
    ======================  ======  ========

    The score is the weighted mean of per-check pass ratios. Any critical
    failure multiplies it by ``CRITICAL_FAILURE_CEILING`` so the result is
    always below 0.5.
    """

    def __init__(
        self,
        accessor,
        snapshot_store=None,
        stale_after_seconds: float = Defaults.STALE_AFTER_SECONDS,
        clock_skew_seconds: float = Defaults.CLOCK_SKEW_SECONDS,
        healthy_threshold: float = Defaults.HEALTHY_THRESHOLD,
        degraded_threshold: float = Defaults.DEGRADED_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[RecoveryMetrics] = None
    ):
        self.accessor = accessor
        self.snapshot_store = snapshot_store
        self.stale_after_seconds = stale_after_seconds
        self.clock_skew_seconds = clock_skew_seconds
        self.healthy_threshold = healthy_threshold
        self.degraded_threshold = degraded_threshold
        self.clock = clock
        self.metrics = metrics or get_metrics()

        # Highest heartbeat seen per agent within the current state epoch.
        self._observed_heartbeats: Dict[str, datetime] = {}
        self._observed_epoch: Optional[int] = None
        self._observe_lock = threading.Lock()

    def analyze(self) -> ConsistencyReport:
        """Read current state and score it. Never raises."""
        start = time.time()
        try:
            state = self.accessor.load_state()
        except AccessorUnavailable as e:
            logger.warning("Analysis could not read state: %s", e)
            self._reset_observations(None)
            report = self._empty_report(f"storage accessor unavailable: {e}", accessor_error=str(e))
        else:
            report = self.evaluate(state, observe=True)

        report.analysis_ms = (time.time() - start) * 1000
        self.metrics.record_analysis(report.overall_score, report.analysis_ms, report.accessor_error is None)
        return report

    def evaluate(self, state: StateModel, observe: bool = False) -> ConsistencyReport:
        """Score a given state.

        With ``observe`` the heartbeats are remembered, so a later analysis
        within the same epoch can detect heartbeats moving backwards.
        """
        if state.is_empty:
            if observe:
                self._reset_observations(None)
            report = self._empty_report(
                "no persisted state: agents, session and global memory are all missing"
            )
            report.missing_components = state.missing_components
            return report

        now = self.clock()
        outcomes = [
            self._check_registry(state),
            self._check_memory(state),
            self._check_timestamps(state, now, observe),
            self._check_cross_references(state),
            self._check_freshness(state, now),
        ]

        results = [result for result, _ in outcomes]
        issues = [issue for _, check_issues in outcomes for issue in check_issues]
        for component in state.missing_components:
            issues.append(f"state: {component} missing")

        report = ConsistencyReport(
            per_check_results=results,
            overall_score=self._score(results),
            issues=issues,
            generated_at=now.isoformat(),
            missing_components=state.missing_components,
            stale_agents=self._stale_agents(state, now),
            malformed_agents=self._malformed_agents(state),
            healthy_threshold=self.healthy_threshold,
            degraded_threshold=self.degraded_threshold,
        )
        return report

    def _empty_report(self, issue: str, accessor_error: Optional[str] = None) -> ConsistencyReport:
        return ConsistencyReport(
            per_check_results=[],
            overall_score=0.0,
            issues=[issue],
            generated_at=self.clock().isoformat(),
            accessor_error=accessor_error,
            missing_components=['agents', 'session', 'global'],
            healthy_threshold=self.healthy_threshold,
            degraded_threshold=self.degraded_threshold,
        )

    @staticmethod
    def _score(results: List[CheckResult]) -> float:
        total_weight = sum(r.weight for r in results)
        if not total_weight:
            return 0.0
        score = sum(r.weight * r.ratio for r in results) / total_weight
        if any(r.critical and not r.passed for r in results):
            score *= Defaults.CRITICAL_FAILURE_CEILING
        return round(score, 4)

    @staticmethod
    def _result(check_id: str, ok: int, total: int, detail: str, critical: bool = False) -> CheckResult:
        ratio = ok / total if total else 1.0
        return CheckResult(
            check_id=check_id,
            passed=ok == total,
            detail=detail,
            ratio=ratio,
            weight=Defaults.CRITICAL_WEIGHT if critical else Defaults.NON_CRITICAL_WEIGHT,
            critical=critical,
        )

    # === Checks ===

    def _check_registry(self, state: StateModel) -> CheckOutcome:
        check_id = CheckIds.REGISTRY_CONSISTENCY
        if state.session is None:
            reason = "session state malformed" if 'session' in state.malformed else "session state missing"
            result = CheckResult(check_id, False, reason, ratio=0.0,
                                 weight=Defaults.CRITICAL_WEIGHT, critical=True)
            return result, [f"{check_id}: {reason}"]

        refs = state.session.referenced_agents()
        issues = []
        for agent_id in sorted(refs):
            if agent_id not in state.session.registry:
                for place in refs[agent_id]:
                    issues.append(f"{check_id}: agent '{agent_id}' referenced by {place} is not registered")

        registered = sum(1 for agent_id in refs if agent_id in state.session.registry)
        detail = f"{registered}/{len(refs)} referenced agents registered"
        return self._result(check_id, registered, len(refs), detail, critical=True), issues

    def _check_memory(self, state: StateModel) -> CheckOutcome:
        check_id = CheckIds.MEMORY_INTEGRITY
        issues = []
        total = ok = 0

        if 'agents' in state.malformed:
            total += 1
            issues.append(f"{check_id}: agent record store unreadable: {state.malformed['agents']}")

        for agent_id in state.malformed_agents:
            total += 1
            issues.append(f"{check_id}: agent '{agent_id}' record unparseable: {state.malformed[f'agent:{agent_id}']}")

        for agent_id, record in sorted(state.agents.items()):
            total += 1
            problems = validate_record(record)
            if problems:
                issues.extend(f"{check_id}: agent '{agent_id}' {problem}" for problem in problems)
            else:
                ok += 1

        total += 1
        if state.global_memory is None:
            reason = "malformed" if 'global' in state.malformed else "missing"
            issues.append(f"{check_id}: global memory {reason}")
        else:
            problems = validate_global_memory(state.global_memory)
            if problems:
                issues.extend(f"{check_id}: global memory {problem}" for problem in problems)
            else:
                ok += 1

        detail = f"{ok}/{total} memory structures well-formed"
        return self._result(check_id, ok, total, detail), issues

    def _check_timestamps(self, state: StateModel, now: datetime, observe: bool) -> CheckOutcome:
        check_id = CheckIds.TIMESTAMP_CONSISTENCY
        limit = now + timedelta(seconds=self.clock_skew_seconds)
        issues = []
        total = ok = 0

        with self._observe_lock:
            if observe and self._observed_epoch != state.epoch:
                self._observed_heartbeats = {}
                self._observed_epoch = state.epoch
            observed = self._observed_heartbeats if self._observed_epoch == state.epoch else {}

            for agent_id, record in sorted(state.agents.items()):
                if record.last_heartbeat is None:
                    continue
                total += 1
                beat = parse_timestamp(record.last_heartbeat)
                if beat is None:
                    issues.append(f"{check_id}: agent '{agent_id}' heartbeat unparseable: {record.last_heartbeat!r}")
                    continue
                if beat > limit:
                    issues.append(f"{check_id}: agent '{agent_id}' heartbeat {record.last_heartbeat} is in the future")
                    continue
                previous = observed.get(agent_id)
                if previous is not None and beat < previous:
                    issues.append(
                        f"{check_id}: agent '{agent_id}' heartbeat moved backwards "
                        f"from {previous.isoformat()} to {record.last_heartbeat}"
                    )
                    continue
                ok += 1
                if observe:
                    self._observed_heartbeats[agent_id] = beat

        if state.session is not None:
            for channel_id, channel in sorted(state.session.coordination_channels.items()):
                activity = channel.get('last_activity') if isinstance(channel, dict) else None
                if activity is None:
                    continue
                total += 1
                parsed = parse_timestamp(activity)
                if parsed is None:
                    issues.append(f"{check_id}: channel '{channel_id}' last_activity unparseable: {activity!r}")
                elif parsed > limit:
                    issues.append(f"{check_id}: channel '{channel_id}' last_activity {activity} is in the future")
                else:
                    ok += 1

        if self.snapshot_store is not None:
            for snapshot_id, taken_at in self.snapshot_store.list_timestamps():
                total += 1
                if taken_at > limit:
                    issues.append(f"{check_id}: snapshot '{snapshot_id}' timestamp {taken_at.isoformat()} is in the future")
                else:
                    ok += 1

        detail = f"{ok}/{total} timestamps consistent"
        return self._result(check_id, ok, total, detail), issues

    def _check_cross_references(self, state: StateModel) -> CheckOutcome:
        check_id = CheckIds.CROSS_REFERENCE
        if state.session is None:
            return self._result(check_id, 1, 1, "no session to cross-reference"), []

        session = state.session
        issues = []
        known_ids = set()
        for _, task in session.iter_tasks():
            if isinstance(task, dict) and isinstance(task.get('id'), str):
                known_ids.add(task['id'])

        seen: Dict[str, str] = {}
        total = ok = 0
        for queue, task in session.iter_tasks():
            total += 1
            if not isinstance(task, dict) or not isinstance(task.get('id'), str) or not task['id']:
                issues.append(f"{check_id}: task without id in {queue}")
                continue

            task_id = task['id']
            problems = []
            if task_id in seen:
                problems.append(f"also appears in {seen[task_id]}")
            else:
                seen[task_id] = queue

            dependencies = task.get('dependencies') or []
            if not isinstance(dependencies, list):
                problems.append("has malformed dependencies")
            else:
                for dep in dependencies:
                    if not isinstance(dep, str) or dep not in known_ids:
                        problems.append(f"depends on unknown task '{dep}'")

            for role in ('assigned_to', 'created_by'):
                agent_id = task.get(role)
                if agent_id and (not isinstance(agent_id, str) or agent_id not in session.registry):
                    problems.append(f"{role} unregistered agent '{agent_id}'")

            if problems:
                issues.extend(f"{check_id}: task '{task_id}' in {queue} {problem}" for problem in problems)
            else:
                ok += 1

        detail = f"{ok}/{total} task descriptors valid"
        return self._result(check_id, ok, total, detail), issues

    def _check_freshness(self, state: StateModel, now: datetime) -> CheckOutcome:
        check_id = CheckIds.HEARTBEAT_FRESHNESS
        if state.session is None:
            return self._result(check_id, 1, 1, "no registry to check"), []

        registered = sorted(state.session.registry)
        stale = self._stale_agents(state, now)
        issues = [f"{check_id}: agent '{agent_id}' is stale or unreachable" for agent_id in stale]
        fresh = len(registered) - len(stale)
        detail = f"{fresh}/{len(registered)} registered agents fresh"
        return self._result(check_id, fresh, len(registered), detail), issues

    def _stale_agents(self, state: StateModel, now: datetime) -> List[str]:
        if state.session is None:
            return []
        cutoff = now - timedelta(seconds=self.stale_after_seconds)
        stale = []
        for agent_id in sorted(state.session.registry):
            record = state.agents.get(agent_id)
            beat = parse_timestamp(record.last_heartbeat) if record else None
            if beat is None or beat < cutoff:
                stale.append(agent_id)
        return stale

    @staticmethod
    def _malformed_agents(state: StateModel) -> List[str]:
        malformed = list(state.malformed_agents)
        malformed.extend(agent_id for agent_id, record in sorted(state.agents.items()) if validate_record(record))
        return malformed

    def _reset_observations(self, epoch: Optional[int]) -> None:
        with self._observe_lock:
            self._observed_heartbeats = {}
            self._observed_epoch = epoch
