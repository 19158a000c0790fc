"""Snapshot Manager - integrity-checked point-in-time copies of all state."""

import gzip
import json
import os
import tempfile
import threading
import uuid
import zlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, Union

from .constants import Defaults, QUEUE_NAMES, SCHEMA_VERSION
from .errors import (
    IntegrityViolation,
    RecoveryError,
    SchemaIncompatible,
    SnapshotNotFound,
)
from .models import (
    RestoreResult,
    Snapshot,
    StateModel,
    canonical_json,
    parse_timestamp,
    sha256_hex,
    utcnow,
)
from .security import get_logger
from .telemetry import RecoveryMetrics, get_metrics

logger = get_logger(__name__)

SnapshotRef = Union[str, Snapshot, None]

_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"
_SUFFIX = ".json"
_COMPRESSED_SUFFIX = ".json.gz"


class SnapshotStore:
    """Append-only directory of snapshot artifacts.

    Each artifact is ``snapshot-<timestamp>-<id>.json`` and is written to a
    temporary file first, then renamed into place. With a compression
    threshold, artifacts larger than it are gzipped as ``.json.gz``; both
    forms are read back. The integrity hash covers the payload, not the
    file encoding.
    """

    def __init__(self, directory: Union[str, Path] = Defaults.SNAPSHOT_DIR, compress_threshold: Optional[int] = None):
        self.directory = Path(directory)
        self.compress_threshold = compress_threshold
        self._sequence_lock = threading.Lock()

    def _filename(self, snapshot: Snapshot, compressed: bool = False) -> str:
        taken_at = parse_timestamp(snapshot.timestamp) or utcnow()
        suffix = _COMPRESSED_SUFFIX if compressed else _SUFFIX
        return f"snapshot-{taken_at.strftime(_TIMESTAMP_FORMAT)}-{snapshot.snapshot_id}{suffix}"

    @staticmethod
    def _parse_name(path: Path) -> Optional[Tuple[str, str]]:
        """(timestamp, snapshot_id) from an artifact name."""
        name = path.name
        for suffix in (_COMPRESSED_SUFFIX, _SUFFIX):
            if name.endswith(suffix):
                name = name[:-len(suffix)]
                break
        else:
            return None
        parts = name.split('-', 2)
        if len(parts) != 3 or parts[0] != 'snapshot':
            return None
        return parts[1], parts[2]

    def _paths(self) -> List[Path]:
        if not self.directory.exists():
            return []
        return sorted(path for path in self.directory.iterdir() if self._parse_name(path) is not None)

    def _path_for(self, snapshot_id: str) -> Optional[Path]:
        for path in self._paths():
            if self._parse_name(path)[1] == snapshot_id:
                return path
        return None

    def exists(self, snapshot_id: str) -> bool:
        return self._path_for(snapshot_id) is not None

    def next_sequence(self) -> int:
        with self._sequence_lock:
            highest = 0
            for snapshot in self.list():
                highest = max(highest, snapshot.sequence)
            return highest + 1

    def save(self, snapshot: Snapshot) -> Path:
        """Write an artifact atomically; existing artifacts are never overwritten."""
        self.directory.mkdir(parents=True, exist_ok=True)
        if self.exists(snapshot.snapshot_id):
            raise FileExistsError(f"Snapshot artifact already exists: {snapshot.snapshot_id}")

        data = json.dumps(snapshot.to_artifact(), indent=2, ensure_ascii=False).encode('utf-8')
        compressed = self.compress_threshold is not None and len(data) > self.compress_threshold
        if compressed:
            data = gzip.compress(data)
        target = self.directory / self._filename(snapshot, compressed)

        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".snapshot-", suffix=".tmp")
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        return target

    def load(self, snapshot_id: str) -> Snapshot:
        path = self._path_for(snapshot_id)
        if path is None:
            raise SnapshotNotFound(f"Snapshot not found: {snapshot_id}")
        return self._read(path)

    def _read(self, path: Path) -> Snapshot:
        try:
            data = path.read_bytes()
            if path.name.endswith(_COMPRESSED_SUFFIX):
                data = gzip.decompress(data)
            return Snapshot.from_artifact(json.loads(data.decode('utf-8')))
        except (ValueError, KeyError, TypeError, EOFError, gzip.BadGzipFile, zlib.error) as e:
            raise IntegrityViolation(f"Snapshot artifact {path.name} is unreadable: {e}") from e
        except OSError as e:
            raise SnapshotNotFound(f"Snapshot artifact {path.name} cannot be read: {e}") from e

    def list(self) -> List[Snapshot]:
        """All readable snapshots, oldest first."""
        snapshots = []
        for path in self._paths():
            try:
                snapshots.append(self._read(path))
            except (IntegrityViolation, SnapshotNotFound) as e:
                logger.warning("Skipping snapshot artifact %s: %s", path.name, e)
        snapshots.sort(key=lambda s: (s.sequence, s.timestamp))
        return snapshots

    def list_timestamps(self) -> List[Tuple[str, datetime]]:
        """(snapshot_id, timestamp) pairs taken from artifact names."""
        pairs = []
        for path in self._paths():
            stamp, snapshot_id = self._parse_name(path)
            try:
                taken_at = datetime.strptime(stamp, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
            except ValueError:
                continue
            pairs.append((snapshot_id, taken_at))
        return pairs


class SnapshotManager:
    """Creates, restores and summarizes snapshots.

    Restores verify the integrity hash, then the schema version, and only
    then replace live state. Restores are serialized so two never
    interleave their writes.
    """

    def __init__(
        self,
        accessor,
        store: SnapshotStore,
        analyzer=None,
        metrics: Optional[RecoveryMetrics] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.accessor = accessor
        self.store = store
        self.analyzer = analyzer
        self.metrics = metrics or get_metrics()
        self.clock = clock
        self._restore_lock = threading.Lock()

    def create_snapshot(self, reason: str) -> Snapshot:
        """Capture all state in one consistent read and persist it.

        Raises:
            AccessorUnavailable: if storage cannot be read
        """
        state = self.accessor.load_state()
        payload = canonical_json(state.to_payload())

        health = {}
        if self.analyzer is not None:
            report = self.analyzer.evaluate(state)
            health = {
                'score': report.overall_score,
                'status': report.status.value,
                'issues': len(report.issues),
            }

        snapshot = Snapshot(
            snapshot_id=f"snap-{uuid.uuid4().hex[:12]}",
            timestamp=self.clock().isoformat(),
            reason=reason,
            payload=payload,
            integrity_hash=sha256_hex(payload),
            schema_version=SCHEMA_VERSION,
            sequence=self.store.next_sequence(),
            health=health,
        )
        self.store.save(snapshot)
        self.metrics.record_snapshot(reason)
        self.accessor.publish_event('snapshot_created', snapshot_id=snapshot.snapshot_id, reason=reason)
        logger.info("Created snapshot %s (%s)", snapshot.snapshot_id, reason)
        return snapshot

    def list_snapshots(self) -> List[Snapshot]:
        return self.store.list()

    def latest_snapshot(self, exclude: Iterable[str] = (), healthy_only: bool = False) -> Optional[Snapshot]:
        """Most recent snapshot, optionally only one healthy at capture time."""
        excluded = set(exclude)
        for snapshot in reversed(self.store.list()):
            if snapshot.snapshot_id in excluded:
                continue
            if healthy_only and snapshot.health.get('status') != 'healthy':
                continue
            return snapshot
        return None

    def _resolve(self, ref: SnapshotRef) -> Snapshot:
        if ref is None:
            latest = self.latest_snapshot()
            if latest is None:
                raise SnapshotNotFound("No snapshots available")
            return latest
        if isinstance(ref, Snapshot):
            if self.store.exists(ref.snapshot_id):
                return self.store.load(ref.snapshot_id)
            return ref
        return self.store.load(ref)

    def restore_snapshot(self, ref: SnapshotRef = None) -> RestoreResult:
        """Replace live state wholesale with a snapshot's contents.

        Never raises; failures come back as a failed RestoreResult whose
        ``error`` is the taxonomy code.
        """
        with self._restore_lock:
            try:
                snapshot = self._resolve(ref)
                state = self._verify(snapshot)
                self.accessor.replace_state(state)
            except RecoveryError as e:
                logger.error("Restore failed: %s", e)
                self.metrics.record_restore(False, e.code)
                snapshot_id = ref.snapshot_id if isinstance(ref, Snapshot) else ref
                return RestoreResult(success=False, snapshot_id=snapshot_id, error=e.code, message=str(e))

        score = self.analyzer.analyze().overall_score if self.analyzer is not None else None
        self.metrics.record_restore(True)
        logger.info("Restored snapshot %s", snapshot.snapshot_id)
        return RestoreResult(
            success=True,
            snapshot_id=snapshot.snapshot_id,
            message=f"Restored snapshot {snapshot.snapshot_id} ({snapshot.reason})",
            restored_agents=sorted(state.agents),
            session_restored=state.session is not None,
            global_restored=state.global_memory is not None,
            consistency_score=score,
        )

    @staticmethod
    def _verify(snapshot: Snapshot) -> StateModel:
        if not snapshot.verify():
            raise IntegrityViolation(f"Integrity hash mismatch for snapshot {snapshot.snapshot_id}")
        if snapshot.schema_version != SCHEMA_VERSION:
            raise SchemaIncompatible(
                f"Snapshot {snapshot.snapshot_id} has schema version {snapshot.schema_version}, "
                f"expected {SCHEMA_VERSION}"
            )
        try:
            return snapshot.state()
        except (ValueError, KeyError, TypeError) as e:
            raise SchemaIncompatible(f"Snapshot {snapshot.snapshot_id} payload does not match schema: {e}") from e

    def generate_summary(self, snapshot: Optional[Snapshot] = None) -> str:
        """Markdown description of a snapshot. Never raises."""
        try:
            if snapshot is None:
                snapshot = self.latest_snapshot()
                if snapshot is None:
                    return "Summary unavailable: no snapshots have been taken"
            if not snapshot.verify():
                return f"Summary unavailable: integrity check failed for {snapshot.snapshot_id}"
            return self._render_summary(snapshot, snapshot.state())
        except (ValueError, KeyError, TypeError, AttributeError, RecoveryError, OSError) as e:
            return f"Summary unavailable: {e}"

    @staticmethod
    def _render_summary(snapshot: Snapshot, state: StateModel) -> str:
        score = snapshot.health.get('score')
        score_text = f"{score:.2f} ({snapshot.health.get('status', 'unknown')})" if score is not None else "unknown"
        session = state.session

        lines = [
            "# Context Summary",
            "",
            f"Snapshot: {snapshot.snapshot_id}",
            f"Reason: {snapshot.reason}",
            f"Captured: {snapshot.timestamp}",
            "",
            "## Session Overview",
            "",
            f"- Session ID: {session.session_id if session else 'missing'}",
            f"- Agent Count: {len(state.agents)}",
            f"- Registered Agents: {len(session.registry) if session else 0}",
            f"- Coordination Channels: {len(session.coordination_channels) if session else 0}",
            f"- Consistency Score: {score_text}",
            "",
            "## Agents Status",
            "",
        ]

        if state.agents:
            for agent_id, record in sorted(state.agents.items()):
                role = record.role_spec.get('role', 'unspecified')
                lines.append(
                    f"- {agent_id} ({role}): {len(record.memory_bank)} memory entries, "
                    f"last heartbeat {record.last_heartbeat or 'never'}"
                )
        else:
            lines.append("- No agent records")
        for agent_id in state.malformed_agents:
            lines.append(f"- {agent_id}: record malformed")

        lines.extend(["", "## Task Queue", ""])
        for name in QUEUE_NAMES:
            size = len(session.task_queues.get(name, [])) if session else 0
            lines.append(f"- {name.capitalize()}: {size}")

        if state.global_memory is not None:
            lines.extend([
                "",
                "## Global Memory",
                "",
                f"- Knowledge Entries: {len(state.global_memory.knowledge)}",
                f"- Config Keys: {len(state.global_memory.config)}",
            ])

        return "\n".join(lines) + "\n"
