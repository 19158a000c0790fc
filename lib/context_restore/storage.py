"""Storage Accessor - Redis-backed agent records, session state and global memory"""

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    ResponseError,
    TimeoutError as RedisTimeoutError,
)

from .constants import RedisKeys
from .errors import AccessorUnavailable, MalformedStructure
from .models import AgentRecord, GlobalMemory, SessionState, StateModel, utcnow
from .security import get_logger

logger = get_logger(__name__)


def parse_epoch(raw: Any) -> Optional[int]:
    """Epoch counter from its stored value; None when unreadable."""
    if raw is None:
        return 0
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _watched_read(read: Callable[[], Any]) -> Any:
    """Read inside a WATCH block; a key of the wrong type reads as None."""
    try:
        return read()
    except ResponseError as e:
        logger.warning("Ignoring unreadable value: %s", e)
        return None


class StateAccessor:
    """Reads and writes the persisted state of all agents.

    Layout:
    - ``ctx:agents``: hash, one JSON AgentRecord per field
    - ``ctx:session``: JSON SessionState
    - ``ctx:global``: JSON GlobalMemory
    - ``ctx:epoch``: incremented on every wholesale replacement

    Redis connection failures surface as AccessorUnavailable. A key holding
    the wrong Redis type reads as malformed and fails writes with
    MalformedStructure.
    """

    def __init__(self, redis_client: redis.Redis, events_channel: str = RedisKeys.EVENTS_CHANNEL):
        self.redis = redis_client
        self.events_channel = events_channel

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            raise AccessorUnavailable(f"{operation} failed: {e}") from e
        except ResponseError as e:
            raise MalformedStructure(f"{operation} failed: {e}") from e

    def _read(self, operation: str, read: Callable[[], Any]) -> Any:
        """Single-key read; a key of the wrong type reads as None."""
        try:
            with self._guard(operation):
                return read()
        except MalformedStructure as e:
            logger.warning("%s", e)
            return None

    # === Whole-state access ===

    def load_state(self) -> StateModel:
        """Read all three structures and the epoch as of a single instant."""
        with self._guard("load_state"):
            pipe = self.redis.pipeline(transaction=True)
            pipe.hgetall(RedisKeys.AGENTS)
            pipe.get(RedisKeys.SESSION)
            pipe.get(RedisKeys.GLOBAL)
            pipe.get(RedisKeys.EPOCH)
            raw_agents, raw_session, raw_global, raw_epoch = pipe.execute(raise_on_error=False)

        return self._build_state(raw_agents, raw_session, raw_global, raw_epoch)

    def _build_state(self, raw_agents: Any, raw_session: Any, raw_global: Any, raw_epoch: Any) -> StateModel:
        epoch = parse_epoch(raw_epoch)
        if epoch is None:
            logger.warning("Unreadable epoch counter %r, treating it as 0", raw_epoch)
            epoch = 0
        state = StateModel(epoch=epoch)

        if isinstance(raw_agents, ResponseError):
            state.malformed['agents'] = str(raw_agents)
            raw_agents = {}

        for agent_id, raw in (raw_agents or {}).items():
            try:
                record = AgentRecord.from_dict(json.loads(raw))
            except (ValueError, TypeError) as e:
                location = f"agent:{agent_id}"
                state.malformed[location] = str(e)
                state.raw_malformed[location] = raw
                continue
            if record.id != agent_id:
                location = f"agent:{agent_id}"
                state.malformed[location] = f"record id '{record.id}' does not match field"
                state.raw_malformed[location] = raw
                continue
            state.agents[agent_id] = record

        if isinstance(raw_session, ResponseError):
            state.malformed['session'] = str(raw_session)
        elif raw_session is not None:
            try:
                state.session = SessionState.from_dict(json.loads(raw_session))
            except (ValueError, TypeError) as e:
                state.malformed['session'] = str(e)
                state.raw_malformed['session'] = raw_session

        if isinstance(raw_global, ResponseError):
            state.malformed['global'] = str(raw_global)
        elif raw_global is not None:
            try:
                state.global_memory = GlobalMemory.from_dict(json.loads(raw_global))
            except (ValueError, TypeError) as e:
                state.malformed['global'] = str(e)
                state.raw_malformed['global'] = raw_global

        return state

    def replace_state(self, state: StateModel) -> int:
        """Overwrite all three structures wholesale in one transaction.

        Returns the new epoch.
        """
        agents: Dict[str, str] = {
            agent_id: json.dumps(record.to_dict()) for agent_id, record in state.agents.items()
        }
        for location, raw in state.raw_malformed.items():
            if location.startswith('agent:'):
                agents[location.split(':', 1)[1]] = raw

        session = state.raw_malformed.get('session')
        if state.session is not None:
            session = json.dumps(state.session.to_dict())
        global_memory = state.raw_malformed.get('global')
        if state.global_memory is not None:
            global_memory = json.dumps(state.global_memory.to_dict())

        epoch_valid = self._epoch_is_valid()
        with self._guard("replace_state"):
            pipe = self.redis.pipeline(transaction=True)
            pipe.delete(*RedisKeys.STATE_KEYS)
            if not epoch_valid:
                pipe.delete(RedisKeys.EPOCH)
            if agents:
                pipe.hset(RedisKeys.AGENTS, mapping=agents)
            if session is not None:
                pipe.set(RedisKeys.SESSION, session)
            if global_memory is not None:
                pipe.set(RedisKeys.GLOBAL, global_memory)
            pipe.incr(RedisKeys.EPOCH)
            epoch = pipe.execute()[-1]

        self.publish_event('state_replaced', epoch=epoch, agents=sorted(agents))
        return int(epoch)

    def get_epoch(self) -> int:
        """Current epoch; an unreadable counter counts as 0."""
        return parse_epoch(self._read("get_epoch", lambda: self.redis.get(RedisKeys.EPOCH))) or 0

    def _epoch_is_valid(self) -> bool:
        try:
            with self._guard("get_epoch"):
                raw = self.redis.get(RedisKeys.EPOCH)
        except MalformedStructure:
            return False
        return parse_epoch(raw) is not None

    def ping(self) -> bool:
        with self._guard("ping"):
            return bool(self.redis.ping())

    # === Agent records ===

    def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        """Get an agent record; None when missing or unparseable."""
        raw = self._read("get_agent", lambda: self.redis.hget(RedisKeys.AGENTS, agent_id))
        if raw is None:
            return None
        try:
            return AgentRecord.from_dict(json.loads(raw))
        except (ValueError, TypeError):
            return None

    def agent_ids(self) -> List[str]:
        return sorted(self._read("agent_ids", lambda: self.redis.hkeys(RedisKeys.AGENTS)) or [])

    def put_agent(self, record: AgentRecord) -> None:
        """Write a whole agent record as a single field."""
        with self._guard("put_agent"):
            self.redis.hset(RedisKeys.AGENTS, record.id, json.dumps(record.to_dict()))

    def update_agent(self, agent_id: str, update: Callable[[Optional[AgentRecord]], Optional[AgentRecord]]) -> Optional[AgentRecord]:
        """Optimistic read-modify-write of one agent record.

        ``update`` receives the current record (None if missing or
        unparseable) and returns the record to store, or None to skip.
        """
        def _apply(pipe):
            raw = _watched_read(lambda: pipe.hget(RedisKeys.AGENTS, agent_id))
            current = None
            if raw is not None:
                try:
                    current = AgentRecord.from_dict(json.loads(raw))
                except (ValueError, TypeError):
                    current = None
            updated = update(current)
            pipe.multi()
            if updated is not None:
                pipe.hset(RedisKeys.AGENTS, agent_id, json.dumps(updated.to_dict()))
            return updated

        with self._guard("update_agent"):
            return self.redis.transaction(_apply, RedisKeys.AGENTS, value_from_callable=True)

    def heartbeat(self, agent_id: str, timestamp: Optional[datetime] = None) -> Optional[AgentRecord]:
        """Refresh an agent's heartbeat, rewriting its record atomically."""
        beat = (timestamp or utcnow()).isoformat()

        def _touch(record: Optional[AgentRecord]) -> Optional[AgentRecord]:
            if record is None:
                return None
            record.last_heartbeat = beat
            return record

        return self.update_agent(agent_id, _touch)

    # === Session state ===

    def get_session(self) -> Optional[SessionState]:
        raw = self._read("get_session", lambda: self.redis.get(RedisKeys.SESSION))
        if raw is None:
            return None
        try:
            return SessionState.from_dict(json.loads(raw))
        except (ValueError, TypeError):
            return None

    def put_session(self, session: SessionState) -> None:
        with self._guard("put_session"):
            self.redis.set(RedisKeys.SESSION, json.dumps(session.to_dict()))

    def update_session(self, update: Callable[[Optional[SessionState]], Tuple[Optional[SessionState], Any]]) -> Any:
        """Optimistic read-modify-write of the session state.

        ``update`` receives the current session (None if missing or
        unparseable) and returns ``(session_to_store, value)``; ``value`` is
        returned to the caller. A None session leaves storage untouched.
        """
        def _apply(pipe):
            raw = _watched_read(lambda: pipe.get(RedisKeys.SESSION))
            current = None
            if raw is not None:
                try:
                    current = SessionState.from_dict(json.loads(raw))
                except (ValueError, TypeError):
                    current = None
            updated, value = update(current)
            pipe.multi()
            if updated is not None:
                pipe.set(RedisKeys.SESSION, json.dumps(updated.to_dict()))
            return value

        with self._guard("update_session"):
            return self.redis.transaction(_apply, RedisKeys.SESSION, value_from_callable=True)

    def register_agent(self, agent_id: str, role_spec: Optional[Dict[str, Any]] = None) -> bool:
        """Ensure an agent is in the session registry. Returns True if added."""
        def _register(session: Optional[SessionState]):
            session = session or SessionState()
            if agent_id in session.registry:
                return None, False
            session.registry[agent_id] = role_spec or {}
            return session, True

        added = self.update_session(_register)
        if added:
            self.publish_event('agent_registered', agent_id=agent_id)
        return added

    # === Global memory ===

    def get_global(self) -> Optional[GlobalMemory]:
        raw = self._read("get_global", lambda: self.redis.get(RedisKeys.GLOBAL))
        if raw is None:
            return None
        try:
            return GlobalMemory.from_dict(json.loads(raw))
        except (ValueError, TypeError):
            return None

    def put_global(self, global_memory: GlobalMemory) -> None:
        with self._guard("put_global"):
            self.redis.set(RedisKeys.GLOBAL, json.dumps(global_memory.to_dict()))

    # === Hashes, lists and events ===

    def replace_documents(self, key: str, documents: Dict[str, Dict[str, Any]]) -> None:
        """Replace a hash of JSON documents in one transaction."""
        with self._guard("replace_documents"):
            pipe = self.redis.pipeline(transaction=True)
            pipe.delete(key)
            if documents:
                pipe.hset(key, mapping={field: json.dumps(doc) for field, doc in documents.items()})
            pipe.execute()

    def read_documents(self, key: str) -> Dict[str, Dict[str, Any]]:
        with self._guard("read_documents"):
            raw = self.redis.hgetall(key)
        return {field: json.loads(data) for field, data in raw.items()}

    def append_history(self, key: str, entry: Dict[str, Any], limit: int) -> None:
        """Append a JSON entry to a bounded list."""
        with self._guard("append_history"):
            pipe = self.redis.pipeline(transaction=True)
            pipe.rpush(key, json.dumps(entry))
            pipe.ltrim(key, -limit, -1)
            pipe.execute()

    def read_history(self, key: str, count: int = 0) -> List[Dict[str, Any]]:
        """Read a JSON list, oldest first; ``count`` limits to the newest entries."""
        start = -count if count > 0 else 0
        with self._guard("read_history"):
            raw_entries = self.redis.lrange(key, start, -1)
        entries = []
        for raw in raw_entries:
            try:
                entries.append(json.loads(raw))
            except ValueError:
                logger.warning("Skipping unreadable entry in %s", key)
        return entries

    def publish_event(self, event: str, **fields) -> None:
        """Publish an event on the events channel; failures are logged only."""
        message = {'event': event, 'timestamp': utcnow().isoformat()}
        message.update(fields)
        try:
            self.redis.publish(self.events_channel, json.dumps(message))
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            logger.warning("Could not publish %s event: %s", event, e)
