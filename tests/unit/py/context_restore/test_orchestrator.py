"""P0 Critical Tests: Recovery Orchestrator.

Engine behaviour is exercised through small custom plans whose action
handlers are replaced with recording doubles.
"""

import json
import threading
import time

import pytest

from context_restore.constants import CheckIds, RedisKeys
from context_restore.errors import RecoveryEscalated, StepFailed
from context_restore.lock import RecoveryLock
from context_restore.models import AgentRecord, CheckResult, ConsistencyReport
from context_restore.orchestrator import classify
from context_restore.recovery import (
    RecoveryPlan,
    RecoveryStep,
    ScenarioType,
    StepAction,
    ValidationCheck,
)
from context_restore.service import ContextRestorationService


@pytest.fixture
def orchestrator(service):
    return service.orchestrator


@pytest.fixture
def calls():
    return []


def _recording(calls, fail_on=(), delay=0.0):
    def _handler(step, ctx):
        calls.append(step.id)
        if delay:
            time.sleep(delay)
        if step.id in fail_on:
            raise StepFailed(f"{step.id} refused")
        return {'ran': step.id}
    return _handler


def _install(monkeypatch, orchestrator, handler, *actions):
    for action in actions or (StepAction.REPAIR, StepAction.NOTIFY):
        monkeypatch.setitem(orchestrator.actions._handlers, action, handler)


def _plan(steps, rollback=(), checks=(), criteria=(), scenario='memory_corruption'):
    return RecoveryPlan(
        scenario=scenario,
        steps=list(steps),
        rollback_steps=list(rollback),
        validation_checks=list(checks),
        success_criteria=list(criteria),
    )


def _step(step_id, mode='continue', deps=(), action='repair', **kwargs):
    return RecoveryStep(id=step_id, action=action, failure_mode=mode, dependencies=list(deps), **kwargs)


def _report(failed=(), critical=(), stale=(), missing=(), malformed=(), accessor_error=None):
    results = [
        CheckResult(check_id, check_id not in failed, "", critical=check_id in critical)
        for check_id in (
            CheckIds.REGISTRY_CONSISTENCY,
            CheckIds.MEMORY_INTEGRITY,
            CheckIds.TIMESTAMP_CONSISTENCY,
            CheckIds.CROSS_REFERENCE,
            CheckIds.HEARTBEAT_FRESHNESS,
        )
    ]
    return ConsistencyReport(
        per_check_results=results,
        overall_score=1.0,
        issues=[],
        generated_at="2026-01-01T00:00:00+00:00",
        accessor_error=accessor_error,
        missing_components=list(missing),
        stale_agents=list(stale),
        malformed_agents=list(malformed),
    )


class TestClassify:
    """First matching rule wins."""

    @pytest.mark.p0
    @pytest.mark.parametrize("report, expected", [
        (_report(accessor_error="down"), 'complete_loss'),
        (_report(missing=('agents', 'session', 'global')), 'complete_loss'),
        (_report(missing=('session',), failed=(CheckIds.MEMORY_INTEGRITY,)), 'partial_loss'),
        (_report(stale=('A', 'B'), failed=(CheckIds.HEARTBEAT_FRESHNESS,)), 'partial_loss'),
        (_report(failed=(CheckIds.MEMORY_INTEGRITY, CheckIds.REGISTRY_CONSISTENCY)), 'memory_corruption'),
        (_report(failed=(CheckIds.REGISTRY_CONSISTENCY,)), 'session_corruption'),
        (_report(failed=(CheckIds.CROSS_REFERENCE,), stale=('A',)), 'session_corruption'),
        (_report(failed=(CheckIds.TIMESTAMP_CONSISTENCY,)), 'session_corruption'),
        (_report(stale=('A',), failed=(CheckIds.HEARTBEAT_FRESHNESS,)), 'agent_failure'),
    ])
    def test_precedence(self, report, expected):
        assert classify(report).type == expected

    def test_healthy_report_needs_no_recovery(self):
        assert classify(_report()) is None

    def test_agent_failure_names_the_agent(self):
        assert classify(_report(stale=('B',))).affected_agents == ['B']


class TestWorkflows:

    @pytest.mark.p0
    def test_initialize_is_idempotent(self, orchestrator, mock_redis):
        first = orchestrator.initialize_recovery_workflows()
        second = orchestrator.initialize_recovery_workflows()

        assert sorted(first) == sorted(second) == sorted(s.value for s in ScenarioType)
        assert mock_redis.hlen(RedisKeys.RECOVERY_PLANS) == 5
        assert set(orchestrator.load_persisted_plans()) == set(first)

    def test_initialize_discards_custom_plans(self, orchestrator):
        orchestrator.register_plan(_plan([_step('only')]))

        orchestrator.initialize_recovery_workflows()

        assert len(orchestrator.plans[ScenarioType.MEMORY_CORRUPTION].steps) == 4

    def test_initialize_without_storage_keeps_plans_in_memory(self, orchestrator, fake_server):
        fake_server.connected = False

        assert len(orchestrator.initialize_recovery_workflows()) == 5

    def test_register_rejects_cyclic_plan(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.register_plan(_plan([_step('a', deps=['b']), _step('b', deps=['a'])]))


class TestExecution:
    """Step ordering, failure modes, retries and timeouts."""

    @pytest.mark.p0
    def test_healthy_system_is_a_noop(self, orchestrator, healthy_state):
        result = orchestrator.execute_recovery()

        assert result.success
        assert result.scenario is None
        assert result.executed_steps == []
        assert result.final_state.status.value == 'healthy'

    @pytest.mark.p0
    def test_steps_follow_dependencies_then_declaration(self, orchestrator, monkeypatch, healthy_state, calls):
        _install(monkeypatch, orchestrator, _recording(calls))
        orchestrator.register_plan(_plan([_step('s1'), _step('s2', deps=['s3']), _step('s3')]))

        result = orchestrator.execute_recovery('memory_corruption')

        assert calls == ['s1', 's3', 's2']
        assert result.success
        assert result.phases == ['detecting', 'plan_selected', 'executing', 'validating', 'succeeded', 'terminal']

    @pytest.mark.p0
    def test_continue_mode_keeps_going(self, orchestrator, monkeypatch, healthy_state, calls):
        _install(monkeypatch, orchestrator, _recording(calls, fail_on=['s1']))
        orchestrator.register_plan(_plan([_step('s1'), _step('s2')]))

        result = orchestrator.execute_recovery('memory_corruption')

        assert calls == ['s1', 's2']
        assert result.failed_steps == ['s1']
        assert not result.rolled_back

    @pytest.mark.p0
    def test_rollback_mode_runs_rollback_in_reverse(self, orchestrator, monkeypatch, healthy_state, calls):
        _install(monkeypatch, orchestrator, _recording(calls, fail_on=['s2']))
        orchestrator.register_plan(_plan(
            [_step('s1'), _step('s2', mode='rollback'), _step('s3')],
            rollback=[_step('rb1'), _step('rb2')],
        ))

        result = orchestrator.execute_recovery('memory_corruption')

        assert calls == ['s1', 's2', 'rb2', 'rb1']
        assert result.rolled_back
        assert not result.success
        assert result.failed_step == 's2'
        assert result.error == 'step_failed'
        assert 'rolling_back' in result.phases
        assert [s.step_id for s in result.rollback_steps] == ['rb2', 'rb1']

    def test_failed_rollback_step_does_not_stop_rollback(self, orchestrator, monkeypatch, healthy_state, calls):
        _install(monkeypatch, orchestrator, _recording(calls, fail_on=['s1', 'rb2']))
        orchestrator.register_plan(_plan([_step('s1', mode='rollback')], rollback=[_step('rb1'), _step('rb2')]))

        result = orchestrator.execute_recovery('memory_corruption')

        assert calls == ['s1', 'rb2', 'rb1']
        assert 'rb2' in result.failed_steps

    @pytest.mark.p0
    def test_escalate_raises_with_partial_result(self, orchestrator, monkeypatch, healthy_state, calls):
        _install(monkeypatch, orchestrator, _recording(calls, fail_on=['s2']))
        orchestrator.register_plan(_plan([_step('s1'), _step('s2', mode='escalate'), _step('s3')]))

        with pytest.raises(RecoveryEscalated) as excinfo:
            orchestrator.execute_recovery('memory_corruption')

        result = excinfo.value.result
        assert calls == ['s1', 's2']
        assert result.failed_step == 's2'
        assert result.error == 'recovery_escalated'
        assert result.phase == 'terminal'
        assert not orchestrator.lock.is_locked()
        assert orchestrator.get_recovery_status()['last_run']['error'] == 'recovery_escalated'

    @pytest.mark.p0
    def test_retries_until_success(self, orchestrator, monkeypatch, healthy_state):
        attempts = []

        def _flaky(step, ctx):
            attempts.append(1)
            if len(attempts) < 3:
                raise StepFailed("not yet")
            return {}

        _install(monkeypatch, orchestrator, _flaky, StepAction.REPAIR)
        orchestrator.register_plan(_plan([_step('s1', retry_count=2)]))

        result = orchestrator.execute_recovery('memory_corruption')

        assert result.executed_steps[0].success
        assert result.executed_steps[0].attempts == 3

    @pytest.mark.p0
    def test_timeout_is_terminal_for_the_step(self, orchestrator, monkeypatch, healthy_state, calls):
        _install(monkeypatch, orchestrator, _recording(calls, delay=0.5), StepAction.REPAIR)
        orchestrator.register_plan(_plan([_step('slow', timeout=0.1, retry_count=3)]))

        result = orchestrator.execute_recovery('memory_corruption')

        step = result.executed_steps[0]
        assert not step.success
        assert step.attempts == 1
        assert step.error == 'step_timeout'

    @pytest.mark.p0
    def test_timed_out_handler_cannot_write_after_timeout(self, orchestrator, monkeypatch, accessor, healthy_state):
        finished = threading.Event()

        def _late_writer(step, ctx):
            try:
                time.sleep(0.6)
                ctx.ensure_active()
                accessor.put_agent(AgentRecord(id='ZOMBIE'))
            finally:
                finished.set()
            return {}

        _install(monkeypatch, orchestrator, _late_writer, StepAction.REPAIR)
        orchestrator.register_plan(_plan([_step('slow', timeout=0.1)]))

        result = orchestrator.execute_recovery('memory_corruption')

        assert finished.is_set()
        assert result.executed_steps[0].error == 'step_timeout'
        assert accessor.get_agent('ZOMBIE') is None

    def test_timed_out_handler_finishes_while_lock_is_held(self, orchestrator, monkeypatch, healthy_state):
        observed = []

        def _stubborn(step, ctx):
            time.sleep(0.4)
            observed.append(orchestrator.lock.is_locked())
            return {}

        _install(monkeypatch, orchestrator, _stubborn, StepAction.REPAIR)
        orchestrator.register_plan(_plan([_step('slow', timeout=0.1)]))

        orchestrator.execute_recovery('memory_corruption')

        assert observed == [True]
        assert not orchestrator.lock.is_locked()

    def test_unmet_dependency_fails_the_step(self, orchestrator, monkeypatch, healthy_state, calls):
        _install(monkeypatch, orchestrator, _recording(calls, fail_on=['s1']))
        orchestrator.register_plan(_plan([_step('s1'), _step('s2', deps=['s1'])]))

        result = orchestrator.execute_recovery('memory_corruption')

        assert calls == ['s1']
        assert result.failed_steps == ['s1', 's2']
        assert "Unmet dependencies" in result.executed_steps[1].message

    @pytest.mark.p0
    def test_critical_validation_failure_forces_rollback(self, orchestrator, monkeypatch, accessor, state_factory, calls):
        state = state_factory()
        state.session.task_queues['pending'][0]['dependencies'] = ['T404']
        accessor.replace_state(state)
        _install(monkeypatch, orchestrator, _recording(calls))
        check = ValidationCheck(id='refs', type='consistency', validation='check_passed',
                                pass_criteria={'check': CheckIds.CROSS_REFERENCE}, critical=True)
        orchestrator.register_plan(_plan([_step('s1')], rollback=[_step('rb1')], checks=[check]))

        result = orchestrator.execute_recovery('memory_corruption')

        assert calls == ['s1', 'rb1']
        assert not result.success
        assert result.rolled_back
        assert result.error == 'critical_validation_failed'

    def test_unmet_success_criteria_fail_the_run(self, orchestrator, monkeypatch, healthy_state, calls):
        _install(monkeypatch, orchestrator, _recording(calls))
        orchestrator.register_plan(_plan([_step('s1')], criteria=["score > 1.5"]))

        result = orchestrator.execute_recovery('memory_corruption')

        assert not result.success
        assert result.error == 'success_criteria_unmet'
        assert result.criteria_results == {"score > 1.5": False}
        assert result.recommendations


class TestExclusivity:

    @pytest.mark.p0
    def test_rejected_while_lock_is_held(self, orchestrator, mock_redis, healthy_state):
        other = RecoveryLock(mock_redis)
        assert other.acquire('rec-other')

        result = orchestrator.execute_recovery('session_corruption')

        assert result.error == 'recovery_already_in_progress'
        assert result.executed_steps == []
        other.release()

    @pytest.mark.p0
    def test_concurrent_runs_never_interleave(self, orchestrator, monkeypatch, healthy_state):
        entered = threading.Event()
        active = []
        overlaps = []

        def _slow(step, ctx):
            active.append(step.id)
            if len(active) > 1:
                overlaps.append(list(active))
            entered.set()
            time.sleep(0.2)
            active.remove(step.id)
            return {}

        _install(monkeypatch, orchestrator, _slow, StepAction.REPAIR)
        orchestrator.register_plan(_plan([_step('s1')]))

        results = []
        first = threading.Thread(target=lambda: results.append(orchestrator.execute_recovery('memory_corruption')))
        first.start()
        entered.wait(5)
        second = orchestrator.execute_recovery('memory_corruption')
        first.join()

        assert overlaps == []
        assert second.error == 'recovery_already_in_progress'
        assert results[0].error is None


class TestDefaultPlans:
    """Built-in plans against real state."""

    def test_stale_agent_is_reinitialized(self, orchestrator, accessor, state_factory, stale_time):
        state = state_factory()
        state.agents['B'].last_heartbeat = stale_time.isoformat()
        accessor.replace_state(state)

        result = orchestrator.execute_recovery()

        assert result.scenario.type == 'agent_failure'
        assert result.success, result.to_dict()
        record = accessor.get_agent('B')
        assert record.memory_bank == {}
        assert record.role_spec == {'role': 'reviewer'}

    def test_bare_memory_values_are_coerced(self, orchestrator, accessor, mock_redis, healthy_state):
        record = healthy_state.agents['B'].to_dict()
        record['memory_bank'] = {'notes': 'raw string'}
        mock_redis.hset(RedisKeys.AGENTS, 'B', json.dumps(record))

        result = orchestrator.execute_recovery()

        assert result.scenario.type == 'memory_corruption'
        assert result.success, result.to_dict()
        assert accessor.get_agent('B').memory_bank['notes']['value'] == 'raw string'

    def test_empty_global_knowledge_key_is_repaired(self, orchestrator, accessor, state_factory):
        state = state_factory()
        state.global_memory.knowledge = {'': 'x', 'k': 1}
        accessor.replace_state(state)

        result = orchestrator.execute_recovery()

        assert result.scenario.type == 'memory_corruption'
        assert result.success, result.to_dict()
        assert not result.rolled_back
        assert accessor.get_global().knowledge == {'k': 1}

    def test_notification_failure_does_not_fail_run(self, mock_redis, config, metrics, accessor, state_factory):
        class _BrokenNotifier:
            def notify(self, event):
                raise RuntimeError("pager down")

        service = ContextRestorationService(mock_redis, config, notifier=_BrokenNotifier(), metrics=metrics)
        state = state_factory()
        del state.session.registry['B']
        accessor.replace_state(state)

        result = service.execute_recovery()

        assert result.success, result.to_dict()
        notify = [s for s in result.executed_steps if s.step_id == 'notify'][0]
        assert notify.success
        assert notify.output['delivered'] is False

    def test_history_and_status(self, orchestrator, mock_redis, state_factory, accessor):
        state = state_factory()
        del state.session.registry['B']
        accessor.replace_state(state)
        orchestrator.execute_recovery()
        orchestrator.execute_recovery()

        status = orchestrator.get_recovery_status()

        assert status['in_progress'] is False
        assert status['total_runs'] == 1
        assert status['successful_runs'] == 1
        assert len(status['registered_plans']) == 5
