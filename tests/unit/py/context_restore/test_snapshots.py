"""P0 Critical Tests: Snapshots.

Covers artifact persistence, the integrity gate in front of restores and
the Markdown summary.
"""

import gzip
import json
import threading
import time

import pytest

from context_restore.analyzer import ConsistencyAnalyzer
from context_restore.constants import RedisKeys
from context_restore.errors import AccessorUnavailable, IntegrityViolation
from context_restore.models import AgentRecord, canonical_json, sha256_hex
from context_restore.snapshots import SnapshotManager, SnapshotStore


@pytest.fixture
def store(snapshot_dir):
    return SnapshotStore(snapshot_dir)


@pytest.fixture
def analyzer(accessor, store, metrics):
    return ConsistencyAnalyzer(accessor, snapshot_store=store, metrics=metrics)


@pytest.fixture
def manager(accessor, store, analyzer, metrics):
    return SnapshotManager(accessor, store, analyzer=analyzer, metrics=metrics)


def _live_payload(accessor):
    return canonical_json(accessor.load_state().to_payload())


def _artifact_path(store, snapshot):
    [path] = store.directory.glob(f"snapshot-*-{snapshot.snapshot_id}.json")
    return path


def _rewrite_artifact(path, **changes):
    artifact = json.loads(path.read_text())
    artifact.update(changes)
    path.write_text(json.dumps(artifact))


class TestCreateSnapshot:

    @pytest.mark.p0
    def test_writes_verifiable_artifact(self, manager, store, healthy_state):
        snapshot = manager.create_snapshot("pre-change")

        path = _artifact_path(store, snapshot)
        assert path.name.startswith("snapshot-")
        assert store.load(snapshot.snapshot_id).verify()
        assert snapshot.health['status'] == 'healthy'
        assert snapshot.health['score'] == 1.0

    def test_sequence_increases(self, manager, healthy_state):
        first = manager.create_snapshot("one")
        second = manager.create_snapshot("two")

        assert second.sequence == first.sequence + 1
        assert [s.snapshot_id for s in manager.list_snapshots()] == [first.snapshot_id, second.snapshot_id]

    @pytest.mark.p0
    def test_unreachable_store_raises(self, manager, healthy_state, fake_server):
        fake_server.connected = False

        with pytest.raises(AccessorUnavailable):
            manager.create_snapshot("doomed")
        assert manager.list_snapshots() == []

    def test_existing_artifact_is_never_overwritten(self, manager, store, healthy_state):
        snapshot = manager.create_snapshot("once")

        with pytest.raises(FileExistsError):
            store.save(snapshot)

    def test_unreadable_artifact_is_skipped_in_listing(self, manager, store, healthy_state):
        snapshot = manager.create_snapshot("good")
        (store.directory / "snapshot-20260101T000000000000Z-snap-bad.json").write_text("{nope")

        assert [s.snapshot_id for s in manager.list_snapshots()] == [snapshot.snapshot_id]

    def test_latest_healthy_skips_degraded_captures(self, manager, accessor, mock_redis, healthy_state):
        healthy = manager.create_snapshot("healthy")
        session = accessor.get_session()
        del session.registry['B']
        accessor.put_session(session)
        manager.create_snapshot("broken")

        assert manager.latest_snapshot(healthy_only=True).snapshot_id == healthy.snapshot_id


class TestRestoreSnapshot:

    @pytest.mark.p0
    def test_round_trip_preserves_consistency_score(self, manager, analyzer, accessor, healthy_state):
        before = analyzer.analyze().overall_score
        snapshot = manager.create_snapshot("baseline")
        accessor.put_agent(AgentRecord(id='C', role_spec={'role': 'intruder'}))
        session = accessor.get_session()
        session.task_queues['pending'].append({'id': 'T3', 'dependencies': ['T404']})
        accessor.put_session(session)

        result = manager.restore_snapshot(snapshot.snapshot_id)

        assert result.success
        assert result.consistency_score == before
        assert result.restored_agents == ['A', 'B']
        assert result.session_restored and result.global_restored

    @pytest.mark.p0
    def test_restore_replaces_state_wholesale(self, manager, accessor, mock_redis, healthy_state):
        snapshot = manager.create_snapshot("baseline")
        accessor.put_agent(AgentRecord(id='C'))

        manager.restore_snapshot(snapshot)

        assert sorted(mock_redis.hkeys(RedisKeys.AGENTS)) == ['A', 'B']

    def test_restore_defaults_to_latest(self, manager, accessor, healthy_state):
        manager.create_snapshot("old")
        accessor.put_agent(AgentRecord(id='C'))
        latest = manager.create_snapshot("new")

        result = manager.restore_snapshot()

        assert result.snapshot_id == latest.snapshot_id
        assert 'C' in accessor.agent_ids()

    def test_restore_preserves_malformed_records(self, manager, accessor, mock_redis, healthy_state):
        mock_redis.hset(RedisKeys.AGENTS, 'C', '{broken')
        snapshot = manager.create_snapshot("with garbage")
        mock_redis.hdel(RedisKeys.AGENTS, 'C')

        manager.restore_snapshot(snapshot.snapshot_id)

        assert mock_redis.hget(RedisKeys.AGENTS, 'C') == '{broken'

    @pytest.mark.p0
    def test_corrupted_payload_is_rejected(self, manager, store, accessor, healthy_state):
        snapshot = manager.create_snapshot("baseline")
        path = _artifact_path(store, snapshot)
        artifact = json.loads(path.read_text())
        tampered = artifact['payload'].replace('session-001', 'session-002', 1)
        _rewrite_artifact(path, payload=tampered)
        accessor.put_agent(AgentRecord(id='C'))
        live_before = _live_payload(accessor)

        result = manager.restore_snapshot(snapshot.snapshot_id)

        assert not result.success
        assert result.error == "integrity_violation"
        assert _live_payload(accessor) == live_before

    def test_in_memory_snapshot_is_reverified_from_disk(self, manager, store, accessor, healthy_state):
        snapshot = manager.create_snapshot("baseline")
        path = _artifact_path(store, snapshot)
        _rewrite_artifact(path, integrity_hash='0' * 64)

        result = manager.restore_snapshot(snapshot)

        assert result.error == "integrity_violation"

    @pytest.mark.p0
    def test_hash_is_checked_before_schema(self, manager, store, accessor, healthy_state):
        snapshot = manager.create_snapshot("baseline")
        _rewrite_artifact(_artifact_path(store, snapshot), integrity_hash='0' * 64, schema_version=99)

        result = manager.restore_snapshot(snapshot.snapshot_id)

        assert result.error == "integrity_violation"

    @pytest.mark.p0
    def test_schema_mismatch_is_rejected(self, manager, store, accessor, healthy_state):
        snapshot = manager.create_snapshot("baseline")
        _rewrite_artifact(_artifact_path(store, snapshot), schema_version=99)
        live_before = _live_payload(accessor)

        result = manager.restore_snapshot(snapshot.snapshot_id)

        assert not result.success
        assert result.error == "schema_incompatible"
        assert _live_payload(accessor) == live_before

    def test_unknown_snapshot_is_not_found(self, manager, healthy_state):
        result = manager.restore_snapshot("snap-missing")

        assert not result.success
        assert result.error == "snapshot_not_found"

    def test_restore_without_snapshots_is_not_found(self, manager):
        assert manager.restore_snapshot().error == "snapshot_not_found"

    def test_restore_into_unreachable_store_fails_cleanly(self, manager, healthy_state, fake_server):
        snapshot = manager.create_snapshot("baseline")
        fake_server.connected = False

        result = manager.restore_snapshot(snapshot.snapshot_id)

        assert result.error == "accessor_unavailable"

    def test_concurrent_restores_do_not_interleave(self, manager, accessor, healthy_state):
        snapshot = manager.create_snapshot("baseline")
        active = []
        overlaps = []
        original = accessor.replace_state

        def _slow_replace(state):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.05)
            try:
                return original(state)
            finally:
                active.pop()

        accessor.replace_state = _slow_replace
        threads = [threading.Thread(target=manager.restore_snapshot, args=(snapshot.snapshot_id,)) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []
        assert accessor.get_epoch() == 4


class TestCompressedArtifacts:
    """Artifacts above the compression threshold are gzipped."""

    @pytest.fixture
    def gzip_store(self, snapshot_dir):
        return SnapshotStore(snapshot_dir, compress_threshold=0)

    @pytest.fixture
    def gzip_manager(self, accessor, gzip_store, analyzer, metrics):
        return SnapshotManager(accessor, gzip_store, analyzer=analyzer, metrics=metrics)

    @pytest.mark.p0
    def test_large_artifact_is_gzipped(self, gzip_manager, gzip_store, healthy_state):
        snapshot = gzip_manager.create_snapshot("compressed")

        [path] = gzip_store.directory.glob(f"snapshot-*-{snapshot.snapshot_id}.json.gz")
        artifact = json.loads(gzip.decompress(path.read_bytes()))
        assert artifact['integrity_hash'] == sha256_hex(artifact['payload'])
        assert gzip_store.load(snapshot.snapshot_id).verify()

    def test_small_artifact_stays_plain(self, accessor, snapshot_dir, healthy_state):
        store = SnapshotStore(snapshot_dir, compress_threshold=10 ** 9)

        snapshot = SnapshotManager(accessor, store).create_snapshot("plain")

        assert _artifact_path(store, snapshot).exists()
        assert list(store.directory.glob("*.json.gz")) == []

    @pytest.mark.p0
    def test_compressed_snapshot_restores(self, gzip_manager, accessor, mock_redis, healthy_state):
        snapshot = gzip_manager.create_snapshot("baseline")
        accessor.put_agent(AgentRecord(id='C'))

        result = gzip_manager.restore_snapshot(snapshot.snapshot_id)

        assert result.success
        assert sorted(mock_redis.hkeys(RedisKeys.AGENTS)) == ['A', 'B']

    def test_listing_reads_both_forms(self, manager, gzip_manager, healthy_state):
        plain = manager.create_snapshot("plain")
        compressed = gzip_manager.create_snapshot("compressed")

        listed = [s.snapshot_id for s in manager.list_snapshots()]

        assert listed == [plain.snapshot_id, compressed.snapshot_id]
        assert {snapshot_id for snapshot_id, _ in manager.store.list_timestamps()} == set(listed)

    def test_corrupted_gzip_is_an_integrity_violation(self, gzip_manager, gzip_store, healthy_state):
        snapshot = gzip_manager.create_snapshot("baseline")
        [path] = gzip_store.directory.glob("*.json.gz")
        path.write_bytes(path.read_bytes()[:20])

        with pytest.raises(IntegrityViolation):
            gzip_store.load(snapshot.snapshot_id)
        assert gzip_manager.restore_snapshot(snapshot.snapshot_id).error == "integrity_violation"


class TestSnapshotLookup:
    """Snapshot ids are matched exactly, never as patterns."""

    @pytest.mark.parametrize("pattern", ["*", "snap-*", "[a-z]*", "?"])
    def test_pattern_ids_match_nothing(self, manager, store, healthy_state, pattern):
        manager.create_snapshot("baseline")

        assert not store.exists(pattern)
        assert manager.restore_snapshot(pattern).error == "snapshot_not_found"

    def test_id_prefix_does_not_match(self, manager, store, healthy_state):
        snapshot = manager.create_snapshot("baseline")

        assert not store.exists(snapshot.snapshot_id[:-1])
        assert store.exists(snapshot.snapshot_id)


class TestSummary:

    @pytest.mark.p0
    def test_summary_has_expected_sections(self, manager, healthy_state):
        manager.create_snapshot("baseline")

        summary = manager.generate_summary()

        assert summary.startswith("# Context Summary")
        assert "## Session Overview" in summary
        assert "- Session ID: session-001" in summary
        assert "- Agent Count: 2" in summary
        assert "- Consistency Score: 1.00 (healthy)" in summary
        assert "## Agents Status" in summary
        assert "## Task Queue" in summary
        assert "- Pending: 1" in summary
        assert "- Active: 1" in summary
        assert "## Global Memory" in summary

    def test_summary_without_snapshots(self, manager):
        assert manager.generate_summary().startswith("Summary unavailable")

    def test_summary_of_corrupted_snapshot(self, manager, store, healthy_state):
        snapshot = manager.create_snapshot("baseline")
        _rewrite_artifact(_artifact_path(store, snapshot), integrity_hash='0' * 64)

        assert manager.generate_summary(store.load(snapshot.snapshot_id)).startswith("Summary unavailable")
