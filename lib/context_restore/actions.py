"""Recovery action handlers: backup, restore, validate, reinitialize, repair, notify."""

import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .constants import QUEUE_NAMES, SUPPORTED_MEMORY_SCHEMAS
from .errors import (
    AccessorUnavailable,
    IntegrityViolation,
    SchemaIncompatible,
    SnapshotNotFound,
    StepFailed,
    StepTimeout,
)
from .models import AgentRecord, ConsistencyReport, GlobalMemory, SessionState, parse_timestamp, utcnow
from .plans import run_validation
from .recovery import FailureScenario, RecoveryPlan, RecoveryStep, StepAction
from .schema import coerce_memory_bank, validate_global_memory, validate_memory_bank
from .security import get_logger

logger = get_logger(__name__)

# Queue precedence when a task is found in several queues; most advanced wins.
QUEUE_PRECEDENCE = {'completed': 3, 'active': 2, 'blocked': 1, 'pending': 0}

_RESTORE_ERRORS = {
    IntegrityViolation.code: IntegrityViolation,
    SchemaIncompatible.code: SchemaIncompatible,
    SnapshotNotFound.code: SnapshotNotFound,
    AccessorUnavailable.code: AccessorUnavailable,
}


@dataclass
class RunContext:
    """State shared by the steps of one recovery run."""
    recovery_id: str
    scenario: FailureScenario
    plan: RecoveryPlan
    report: Optional[ConsistencyReport] = None
    backup_id: Optional[str] = None
    created_snapshots: List[str] = field(default_factory=list)
    # Set by the orchestrator when the running step exceeds its timeout.
    cancelled: threading.Event = field(default_factory=threading.Event)

    def ensure_active(self) -> None:
        """Raise StepTimeout once the running step has been abandoned.

        Handlers call this before every write so a timed-out step stops
        touching state.
        """
        if self.cancelled.is_set():
            raise StepTimeout("Step abandoned after exceeding its timeout")


class ActionHandlers:
    """Maps every StepAction to the handler that performs it.

    Handlers take ``(step, context)`` and return an output mapping; they
    raise a RecoveryError subclass on failure.
    """

    def __init__(self, accessor, snapshots, analyzer, notifier=None, clock: Callable[[], datetime] = utcnow):
        self.accessor = accessor
        self.snapshots = snapshots
        self.analyzer = analyzer
        self.notifier = notifier
        self.clock = clock
        self._handlers = {
            StepAction.BACKUP: self.backup,
            StepAction.RESTORE: self.restore,
            StepAction.VALIDATE: self.validate,
            StepAction.REINITIALIZE: self.reinitialize,
            StepAction.REPAIR: self.repair,
            StepAction.NOTIFY: self.notify,
        }
        missing = set(StepAction) - set(self._handlers)
        if missing:
            raise ValueError(f"No handler for actions: {sorted(a.value for a in missing)}")

    def handler_for(self, action: StepAction) -> Callable[[RecoveryStep, RunContext], Dict[str, Any]]:
        return self._handlers[action]

    # === backup / restore ===

    def backup(self, step: RecoveryStep, ctx: RunContext) -> Dict[str, Any]:
        reason = step.parameters.get('reason', f"pre-recovery-{ctx.scenario.type}")
        ctx.ensure_active()
        snapshot = self.snapshots.create_snapshot(f"{reason} ({ctx.recovery_id})")
        ctx.backup_id = snapshot.snapshot_id
        ctx.created_snapshots.append(snapshot.snapshot_id)
        return {'snapshot_id': snapshot.snapshot_id}

    def restore(self, step: RecoveryStep, ctx: RunContext) -> Dict[str, Any]:
        source = step.parameters.get('source', 'latest_healthy')

        if source == 'run_backup':
            if ctx.backup_id is None:
                raise SnapshotNotFound("No backup was taken during this recovery run")
            snapshot_id = ctx.backup_id
        elif source in ('latest', 'latest_healthy'):
            snapshot = self.snapshots.latest_snapshot(
                exclude=ctx.created_snapshots, healthy_only=source == 'latest_healthy'
            )
            if snapshot is None and source == 'latest_healthy':
                snapshot = self.snapshots.latest_snapshot(exclude=ctx.created_snapshots)
                if snapshot is not None:
                    logger.warning("No healthy snapshot available, restoring %s instead", snapshot.snapshot_id)
            if snapshot is None:
                raise SnapshotNotFound("No snapshot available to restore")
            snapshot_id = snapshot.snapshot_id
        else:
            snapshot_id = source

        ctx.ensure_active()
        result = self.snapshots.restore_snapshot(snapshot_id)
        if not result.success:
            error_cls = _RESTORE_ERRORS.get(result.error, StepFailed)
            raise error_cls(result.message)
        return result.to_dict()

    # === validate ===

    def validate(self, step: RecoveryStep, ctx: RunContext) -> Dict[str, Any]:
        params = step.parameters
        report = self.analyzer.analyze()
        ctx.report = report

        problems = []
        if report.accessor_error:
            problems.append(report.accessor_error)

        min_score = params.get('min_score')
        if min_score is not None and report.overall_score < min_score:
            problems.append(f"score {report.overall_score:.2f} below {min_score}")

        failed = set(report.failed_checks)
        for check_id in params.get('required_checks', []):
            if check_id in failed or report.check(check_id) is None:
                problems.append(f"required check {check_id} did not pass")

        max_stale = params.get('max_stale')
        if max_stale is not None and len(report.stale_agents) > max_stale:
            problems.append(f"{len(report.stale_agents)} stale agents (allowed {max_stale})")

        bound = params.get('check')
        if bound:
            check = ctx.plan.get_check(bound)
            passed, detail = run_validation(check, report, self.accessor)
            if not passed:
                problems.append(f"check {bound} failed: {detail}")

        if problems:
            raise StepFailed("; ".join(problems))
        return {'score': report.overall_score, 'status': report.status.value}

    # === reinitialize ===

    def _target_agents(self, step: RecoveryStep, ctx: RunContext) -> List[str]:
        agents = step.parameters.get('agents', 'affected')
        if agents == 'affected':
            return ctx.scenario.affected_agents
        if agents == 'unreachable':
            return self.analyzer.analyze().stale_agents
        if isinstance(agents, list):
            return list(agents)
        raise StepFailed(f"Cannot interpret agents parameter {agents!r}")

    def reinitialize(self, step: RecoveryStep, ctx: RunContext) -> Dict[str, Any]:
        """Baseline record: role spec kept, memory bank and coordination state cleared."""
        agent_ids = self._target_agents(step, ctx)
        session = self.accessor.get_session()
        now = self.clock().isoformat()

        reinitialized = []
        for agent_id in agent_ids:
            existing = self.accessor.get_agent(agent_id)
            if existing is not None:
                role_spec = existing.role_spec
            elif session is not None and isinstance(session.registry.get(agent_id), dict):
                role_spec = session.registry[agent_id]
            else:
                role_spec = {}

            ctx.ensure_active()
            self.accessor.put_agent(AgentRecord(id=agent_id, role_spec=role_spec, last_heartbeat=now))
            self.accessor.register_agent(agent_id, role_spec)
            reinitialized.append(agent_id)
            logger.info("Reinitialized agent %s", agent_id)

        return {'reinitialized': reinitialized}

    # === repair ===

    def repair(self, step: RecoveryStep, ctx: RunContext) -> Dict[str, Any]:
        targets = step.parameters.get('targets', ['memory'])
        repairs = {
            'memory': self._repair_memory,
            'session': self._repair_session,
            'timestamps': self._repair_timestamps,
        }
        output = {}
        for target in targets:
            if target not in repairs:
                raise StepFailed(f"Unknown repair target '{target}'")
            output[target] = repairs[target](ctx)
        return output

    def _repair_memory(self, ctx: RunContext) -> List[str]:
        state = self.accessor.load_state()
        now = self.clock().isoformat()
        changes: List[str] = []
        unrepairable: List[str] = []

        for agent_id, record in sorted(state.agents.items()):
            if record.schema_version not in SUPPORTED_MEMORY_SCHEMAS:
                unrepairable.append(f"agent '{agent_id}' has unsupported schema version {record.schema_version!r}")
                continue
            if not validate_memory_bank(record.memory_bank, record.schema_version):
                continue
            bank, bank_changes = coerce_memory_bank(record.memory_bank, record.last_heartbeat or now)
            record.memory_bank = bank
            ctx.ensure_active()
            self.accessor.put_agent(record)
            changes.extend(f"{agent_id}: {change}" for change in bank_changes)

        for agent_id in state.malformed_agents:
            raw = state.raw_malformed.get(f"agent:{agent_id}")
            record = self._salvage_record(agent_id, raw, now)
            if record is None:
                unrepairable.append(f"agent '{agent_id}' record is not a JSON object")
                continue
            ctx.ensure_active()
            self.accessor.put_agent(record)
            changes.append(f"{agent_id}: rebuilt malformed record")

        if 'global' in state.malformed:
            salvaged = self._salvage_global(state.raw_malformed.get('global'))
            if salvaged is None:
                unrepairable.append("global memory is not a JSON object")
            else:
                ctx.ensure_active()
                self.accessor.put_global(salvaged)
                changes.append("global: rebuilt malformed global memory")
        elif state.global_memory is not None:
            problems = validate_global_memory(state.global_memory)
            if problems:
                ctx.ensure_active()
                self.accessor.put_global(_clean_global(state.global_memory.knowledge, state.global_memory.config))
                changes.extend(f"global: fixed {problem}" for problem in problems)

        if unrepairable:
            raise StepFailed("Unrepairable memory: " + "; ".join(unrepairable))
        return changes

    @staticmethod
    def _salvage_record(agent_id: str, raw: Optional[str], now: str) -> Optional[AgentRecord]:
        try:
            data = json.loads(raw) if raw is not None else None
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None

        heartbeat = data.get('last_heartbeat')
        if not isinstance(heartbeat, str) or parse_timestamp(heartbeat) is None:
            heartbeat = None
        bank, _ = coerce_memory_bank(data.get('memory_bank', {}), heartbeat or now)
        return AgentRecord(
            id=agent_id,
            role_spec=data['role_spec'] if isinstance(data.get('role_spec'), dict) else {},
            memory_bank=bank,
            last_heartbeat=heartbeat,
            coordination_state=data['coordination_state'] if isinstance(data.get('coordination_state'), dict) else {},
        )

    @staticmethod
    def _salvage_global(raw: Optional[str]) -> Optional[GlobalMemory]:
        try:
            data = json.loads(raw) if raw is not None else None
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        knowledge = data.get('knowledge') if isinstance(data.get('knowledge'), dict) else {}
        config = data.get('config') if isinstance(data.get('config'), dict) else {}
        return _clean_global(knowledge, config)

    def _repair_session(self, ctx: RunContext) -> List[str]:
        records = self.accessor.load_state().agents

        def _fix(session: Optional[SessionState]):
            if session is None:
                raise StepFailed("Session state is missing or unparseable")
            changes = repair_session_state(session, records)
            return (session if changes else None), changes

        ctx.ensure_active()
        changes = self.accessor.update_session(_fix)
        for change in changes:
            logger.info("Session repair: %s", change)
        return changes

    def _repair_timestamps(self, ctx: RunContext) -> List[str]:
        now = self.clock()
        limit = now + timedelta(seconds=self.analyzer.clock_skew_seconds)
        changes = []

        state = self.accessor.load_state()
        for agent_id, record in sorted(state.agents.items()):
            if record.last_heartbeat is None:
                continue
            beat = parse_timestamp(record.last_heartbeat)
            if beat is not None and beat <= limit:
                continue

            def _clamp(current: Optional[AgentRecord]) -> Optional[AgentRecord]:
                if current is None:
                    return None
                current.last_heartbeat = now.isoformat()
                return current

            ctx.ensure_active()
            self.accessor.update_agent(agent_id, _clamp)
            changes.append(f"{agent_id}: heartbeat reset to now")

        def _clamp_channels(session: Optional[SessionState]):
            if session is None:
                return None, []
            fixed = []
            for channel_id, channel in session.coordination_channels.items():
                if not isinstance(channel, dict) or channel.get('last_activity') is None:
                    continue
                activity = parse_timestamp(channel['last_activity'])
                if activity is None or activity > limit:
                    channel['last_activity'] = now.isoformat()
                    fixed.append(f"channel {channel_id}: last_activity reset to now")
            return (session if fixed else None), fixed

        ctx.ensure_active()
        changes.extend(self.accessor.update_session(_clamp_channels))
        return changes

    # === notify ===

    def notify(self, step: RecoveryStep, ctx: RunContext) -> Dict[str, Any]:
        """Best effort; never fails the step."""
        event = {
            'event': step.parameters.get('event', 'recovery_progress'),
            'recovery_id': ctx.recovery_id,
            'scenario': ctx.scenario.type,
            'severity': ctx.scenario.severity,
            'score': ctx.report.overall_score if ctx.report else None,
            'timestamp': self.clock().isoformat(),
        }
        if self.notifier is None:
            logger.info("Recovery %s notification: %s", ctx.recovery_id, event['event'])
            return {'delivered': False}
        try:
            self.notifier.notify(event)
        except Exception as e:
            logger.warning("Notification for recovery %s failed: %s", ctx.recovery_id, e)
            return {'delivered': False, 'error': str(e)}
        return {'delivered': True}


def _clean_global(knowledge: Dict[str, Any], config: Dict[str, Any]) -> GlobalMemory:
    """Global memory without knowledge entries whose key is empty."""
    return GlobalMemory(
        knowledge={k: v for k, v in knowledge.items() if isinstance(k, str) and k.strip()},
        config=config,
    )


def repair_session_state(session: SessionState, records: Dict[str, AgentRecord]) -> List[str]:
    """Fix dangling references in a session in place. Returns the changes made.

    - referenced agents that still have a record are re-registered
    - other dangling agents are dropped from channels and their tasks unassigned
    - tasks found in several queues keep only the most advanced copy
    - dependencies on unknown tasks are dropped
    """
    changes = []

    for channel_id, channel in session.coordination_channels.items():
        if isinstance(channel, dict) and not isinstance(channel.get('participants', []), list):
            channel['participants'] = []
            changes.append(f"channel {channel_id}: reset malformed participants")

    for agent_id in sorted(session.referenced_agents()):
        if agent_id in session.registry:
            continue
        if agent_id in records:
            session.registry[agent_id] = records[agent_id].role_spec
            changes.append(f"re-registered agent {agent_id}")
            continue

        for channel_id, channel in session.coordination_channels.items():
            participants = channel.get('participants', []) if isinstance(channel, dict) else []
            if agent_id in participants:
                channel['participants'] = [p for p in participants if p != agent_id]
                changes.append(f"removed {agent_id} from channel {channel_id}")

        for queue in QUEUE_NAMES:
            kept = []
            for task in session.task_queues[queue]:
                if isinstance(task, dict) and task.get('assigned_to') == agent_id:
                    task['assigned_to'] = None
                    if queue == 'active':
                        session.task_queues['pending'].append(task)
                        changes.append(f"unassigned task {task.get('id')} from {agent_id} and returned it to pending")
                        continue
                    changes.append(f"unassigned task {task.get('id')} from {agent_id}")
                kept.append(task)
            session.task_queues[queue] = kept

    for queue in QUEUE_NAMES:
        for task in session.task_queues[queue]:
            if not isinstance(task, dict):
                continue
            creator = task.get('created_by')
            if creator and (not isinstance(creator, str) or creator not in session.registry):
                if isinstance(creator, str) and creator in records:
                    session.registry[creator] = records[creator].role_spec
                    changes.append(f"re-registered agent {creator}")
                else:
                    task['created_by'] = None
                    changes.append(f"cleared unknown creator of task {task.get('id')}")

    changes.extend(_dedupe_tasks(session))

    known = {task['id'] for _, task in session.iter_tasks()}
    for _, task in session.iter_tasks():
        dependencies = task.get('dependencies')
        if dependencies is None:
            continue
        if not isinstance(dependencies, list):
            task['dependencies'] = []
            changes.append(f"reset malformed dependencies of task {task['id']}")
            continue
        valid = [dep for dep in dependencies if isinstance(dep, str) and dep in known]
        if len(valid) != len(dependencies):
            task['dependencies'] = valid
            changes.append(f"dropped unknown dependencies of task {task['id']}")

    return changes


def _dedupe_tasks(session: SessionState) -> List[str]:
    changes = []
    best: Dict[str, str] = {}
    for queue, task in session.iter_tasks():
        if not isinstance(task, dict):
            continue
        if not isinstance(task.get('id'), str) or not task['id']:
            task['id'] = f"task-{uuid.uuid4().hex[:8]}"
            changes.append(f"assigned id {task['id']} to task without id in {queue}")
        current = best.get(task['id'])
        if current is None or QUEUE_PRECEDENCE[queue] > QUEUE_PRECEDENCE[current]:
            best[task['id']] = queue

    for queue in QUEUE_NAMES:
        kept = []
        seen = set()
        for task in session.task_queues[queue]:
            if not isinstance(task, dict):
                changes.append(f"dropped malformed task entry in {queue}")
                continue
            task_id = task['id']
            if best[task_id] != queue or task_id in seen:
                changes.append(f"dropped duplicate of task {task_id} from {queue}")
                continue
            seen.add(task_id)
            kept.append(task)
        session.task_queues[queue] = kept
    return changes
