"""P0 Critical Tests: Storage Accessor.

Uses fakeredis; taking the FakeServer down simulates an unreachable store.
"""

import json

import pytest

from context_restore.constants import RedisKeys
from context_restore.errors import AccessorUnavailable, MalformedStructure
from context_restore.models import AgentRecord, SessionState


class TestLoadAndReplace:
    """Whole-state reads and writes."""

    @pytest.mark.p0
    def test_empty_store_loads_empty_state(self, accessor):
        state = accessor.load_state()

        assert state.is_empty
        assert state.epoch == 0

    @pytest.mark.p0
    def test_replace_then_load_round_trips(self, accessor, state_factory):
        state = state_factory()

        epoch = accessor.replace_state(state)
        loaded = accessor.load_state()

        assert epoch == 1
        assert loaded.agents == state.agents
        assert loaded.session == state.session
        assert loaded.global_memory == state.global_memory
        assert loaded.epoch == 1

    @pytest.mark.p0
    def test_replace_is_total(self, accessor, mock_redis, state_factory):
        accessor.replace_state(state_factory(agent_ids=("A", "B", "C")))

        accessor.replace_state(state_factory(agent_ids=("A", "B")))

        assert sorted(mock_redis.hkeys(RedisKeys.AGENTS)) == ['A', 'B']

    def test_each_replace_increments_epoch(self, accessor, state_factory):
        accessor.replace_state(state_factory())
        accessor.replace_state(state_factory())

        assert accessor.get_epoch() == 2

    @pytest.mark.p0
    def test_malformed_records_are_tracked_with_raw_text(self, accessor, mock_redis, healthy_state):
        mock_redis.hset(RedisKeys.AGENTS, 'C', '{not json')

        state = accessor.load_state()

        assert state.malformed_agents == ['C']
        assert state.raw_malformed['agent:C'] == '{not json'
        assert 'C' not in state.agents

    def test_record_id_mismatch_is_malformed(self, accessor, mock_redis, healthy_state):
        mock_redis.hset(RedisKeys.AGENTS, 'C', json.dumps({'id': 'D'}))

        state = accessor.load_state()

        assert 'C' in state.malformed_agents

    def test_replace_preserves_malformed_raw_text(self, accessor, mock_redis, healthy_state):
        mock_redis.hset(RedisKeys.AGENTS, 'C', '{not json')
        mock_redis.set(RedisKeys.GLOBAL, '[1, 2')
        state = accessor.load_state()

        accessor.replace_state(state)

        assert mock_redis.hget(RedisKeys.AGENTS, 'C') == '{not json'
        assert mock_redis.get(RedisKeys.GLOBAL) == '[1, 2'

    @pytest.mark.p0
    def test_unreachable_store_raises_accessor_unavailable(self, accessor, fake_server):
        fake_server.connected = False

        with pytest.raises(AccessorUnavailable):
            accessor.load_state()
        with pytest.raises(AccessorUnavailable):
            accessor.ping()


class TestRecordUpdates:
    """Per-record and session read-modify-write."""

    def test_heartbeat_rewrites_record(self, accessor, healthy_state, stale_time):
        accessor.heartbeat('A', stale_time)

        assert accessor.get_agent('A').last_heartbeat == stale_time.isoformat()
        assert accessor.get_agent('A').memory_bank == healthy_state.agents['A'].memory_bank

    def test_heartbeat_for_unknown_agent_is_noop(self, accessor, healthy_state):
        assert accessor.heartbeat('Z') is None
        assert accessor.get_agent('Z') is None

    def test_register_agent_adds_once(self, accessor, healthy_state):
        assert accessor.register_agent('C', {'role': 'tester'}) is True
        assert accessor.register_agent('C', {'role': 'tester'}) is False
        assert accessor.get_session().registry['C'] == {'role': 'tester'}

    def test_register_agent_creates_missing_session(self, accessor):
        accessor.register_agent('A')

        assert accessor.get_session().registry == {'A': {}}

    def test_update_session_returns_value(self, accessor, healthy_state):
        def _rename(session: SessionState):
            session.session_id = 'renamed'
            return session, 'done'

        assert accessor.update_session(_rename) == 'done'
        assert accessor.get_session().session_id == 'renamed'

    def test_get_agent_returns_none_for_malformed(self, accessor, mock_redis):
        mock_redis.hset(RedisKeys.AGENTS, 'A', 'garbage')

        assert accessor.get_agent('A') is None

    def test_put_agent_writes_whole_record(self, accessor):
        accessor.put_agent(AgentRecord(id='A', role_spec={'role': 'x'}))

        assert accessor.agent_ids() == ['A']


class TestWrongTypedKeys:
    """State keys overwritten with the wrong Redis type read as malformed."""

    @pytest.mark.p0
    @pytest.mark.parametrize("key,location", [
        (RedisKeys.AGENTS, 'agents'),
        (RedisKeys.SESSION, 'session'),
        (RedisKeys.GLOBAL, 'global'),
    ])
    def test_load_state_marks_location_malformed(self, accessor, store_wrong_type, healthy_state, key, location):
        store_wrong_type(key)

        state = accessor.load_state()

        assert 'WRONGTYPE' in state.malformed[location]
        assert location not in state.missing_components
        assert location not in state.raw_malformed

    def test_other_structures_still_load(self, accessor, store_wrong_type, healthy_state):
        store_wrong_type(RedisKeys.SESSION)

        state = accessor.load_state()

        assert sorted(state.agents) == ['A', 'B']
        assert state.global_memory == healthy_state.global_memory
        assert state.session is None

    def test_single_reads_return_none(self, accessor, store_wrong_type, healthy_state):
        for key in RedisKeys.STATE_KEYS:
            store_wrong_type(key)

        assert accessor.get_session() is None
        assert accessor.get_global() is None
        assert accessor.get_agent('A') is None
        assert accessor.agent_ids() == []

    def test_session_update_overwrites_wrong_type(self, accessor, store_wrong_type, healthy_state):
        store_wrong_type(RedisKeys.SESSION)

        assert accessor.register_agent('A', {'role': 'implementer'}) is True
        assert accessor.get_session().registry == {'A': {'role': 'implementer'}}

    def test_agent_write_into_wrong_type_raises(self, accessor, store_wrong_type):
        store_wrong_type(RedisKeys.AGENTS)

        with pytest.raises(MalformedStructure):
            accessor.put_agent(AgentRecord(id='A'))

    def test_replace_state_recovers_every_key(self, accessor, store_wrong_type, state_factory):
        for key in RedisKeys.STATE_KEYS:
            store_wrong_type(key)

        accessor.replace_state(state_factory())

        state = accessor.load_state()
        assert state.malformed == {}
        assert sorted(state.agents) == ['A', 'B']


class TestEpochCounter:

    @pytest.mark.p0
    def test_unreadable_epoch_loads_as_zero(self, accessor, mock_redis, healthy_state):
        mock_redis.set(RedisKeys.EPOCH, 'garbage')

        state = accessor.load_state()

        assert state.epoch == 0
        assert sorted(state.agents) == ['A', 'B']
        assert accessor.get_epoch() == 0

    @pytest.mark.parametrize("corrupt", [
        lambda r: r.set(RedisKeys.EPOCH, 'garbage'),
        lambda r: r.rpush(RedisKeys.EPOCH, '3'),
    ])
    def test_replace_restarts_unreadable_epoch(self, accessor, mock_redis, state_factory, corrupt):
        corrupt(mock_redis)

        assert accessor.replace_state(state_factory()) == 1
        assert accessor.get_epoch() == 1


class TestHistoryAndEvents:

    def test_history_is_bounded(self, accessor):
        for i in range(5):
            accessor.append_history('ctx:test:history', {'n': i}, limit=3)

        entries = accessor.read_history('ctx:test:history')
        assert [e['n'] for e in entries] == [2, 3, 4]

    def test_read_history_count_returns_newest(self, accessor):
        for i in range(5):
            accessor.append_history('ctx:test:history', {'n': i}, limit=10)

        assert [e['n'] for e in accessor.read_history('ctx:test:history', count=2)] == [3, 4]

    def test_documents_are_replaced_wholesale(self, accessor):
        accessor.replace_documents('ctx:test:docs', {'a': {'x': 1}, 'b': {'x': 2}})
        accessor.replace_documents('ctx:test:docs', {'c': {'x': 3}})

        assert accessor.read_documents('ctx:test:docs') == {'c': {'x': 3}}

    def test_publish_failure_is_not_raised(self, accessor, fake_server):
        fake_server.connected = False

        accessor.publish_event('anything', detail=1)
