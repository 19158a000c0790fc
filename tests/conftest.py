"""Shared pytest fixtures for context restoration tests."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import fakeredis
import pytest

# Add lib directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "lib"))

from context_restore.config import RestoreConfig
from context_restore.constants import RedisKeys
from context_restore.models import AgentRecord, GlobalMemory, SessionState, StateModel
from context_restore.service import ContextRestorationService
from context_restore.storage import StateAccessor
from context_restore.telemetry import RecoveryMetrics


@pytest.fixture
def fake_server():
    """Redis server shared by every client in a test; set ``connected = False`` to take it down."""
    return fakeredis.FakeServer()


@pytest.fixture
def mock_redis(fake_server):
    """Create a fake Redis client for testing."""
    return fakeredis.FakeStrictRedis(server=fake_server, decode_responses=True)


@pytest.fixture
def accessor(mock_redis):
    return StateAccessor(mock_redis)


@pytest.fixture
def metrics():
    """Fresh metrics so tests never share counters."""
    return RecoveryMetrics('test')


@pytest.fixture
def snapshot_dir(tmp_path):
    return tmp_path / "snapshots"


@pytest.fixture
def config(snapshot_dir):
    return RestoreConfig(redis_url="redis://localhost:6379/15", snapshot_dir=str(snapshot_dir))


@pytest.fixture
def service(mock_redis, config, metrics):
    svc = ContextRestorationService(redis_client=mock_redis, config=config, metrics=metrics)
    yield svc
    svc.stop_health_monitoring()


def memory_entry(value, updated_at=None):
    return {
        'value': value,
        'updated_at': updated_at or datetime.now(timezone.utc).isoformat(),
        'tags': [],
    }


@pytest.fixture
def state_factory():
    """Build a consistent two-agent state.

    Agents ``A`` and ``B`` are registered, ``T1`` is active and assigned to
    ``A``, and channel ``c1`` links both agents.
    """
    def _build(agent_ids=("A", "B"), heartbeat=None) -> StateModel:
        beat = (heartbeat or datetime.now(timezone.utc)).isoformat()
        agents = {
            agent_id: AgentRecord(
                id=agent_id,
                role_spec={'role': 'implementer' if agent_id == 'A' else 'reviewer'},
                memory_bank={'current_task': memory_entry('T1', beat)},
                last_heartbeat=beat,
                coordination_state={'channel': 'c1'},
            )
            for agent_id in agent_ids
        }
        session = SessionState(
            session_id='session-001',
            registry={agent_id: agents[agent_id].role_spec for agent_id in agent_ids},
            task_queues={
                'pending': [{'id': 'T2', 'created_by': agent_ids[0], 'dependencies': ['T1']}],
                'active': [{'id': 'T1', 'assigned_to': agent_ids[0], 'created_by': agent_ids[0]}],
                'completed': [],
                'blocked': [],
            },
            performance_metrics={'tasks_completed': 3},
            coordination_channels={
                'c1': {'participants': list(agent_ids), 'last_activity': beat},
            },
        )
        global_memory = GlobalMemory(
            knowledge={'architecture': 'event-driven'},
            config={'max_agents': 5},
        )
        return StateModel(agents=agents, session=session, global_memory=global_memory)

    return _build


@pytest.fixture
def healthy_state(accessor, state_factory):
    """Write the consistent two-agent state to fake Redis."""
    state = state_factory()
    accessor.replace_state(state)
    return state


@pytest.fixture
def stale_time():
    """A heartbeat well past the staleness threshold."""
    return datetime.now(timezone.utc) - timedelta(hours=1)


@pytest.fixture
def store_wrong_type(mock_redis):
    """Replace a state key with a value of a Redis type it never holds."""
    def _store(key):
        mock_redis.delete(key)
        if key == RedisKeys.AGENTS:
            mock_redis.rpush(key, 'A')
        else:
            mock_redis.hset(key, 'field', 'value')
    return _store


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "p0: critical path tests"
    )
    config.addinivalue_line(
        "markers", "p1: important behaviour tests"
    )
    config.addinivalue_line(
        "markers", "e2e: marks end-to-end tests"
    )


def pytest_collection_modifyitems(config, items):
    """Add markers based on test location."""
    for item in items:
        if "e2e" in str(item.fspath):
            item.add_marker(pytest.mark.e2e)
