"""Memory bank schema validation and repair.

Schema version 1 memory bank::

    {
        "<key>": {"value": <any JSON>, "updated_at": "<ISO-8601>", "tags": ["..."]},
        ...
    }

``tags`` is optional. Keys must be non-empty strings.
"""

from typing import Any, Dict, List, Tuple

from .constants import SUPPORTED_MEMORY_SCHEMAS
from .models import AgentRecord, GlobalMemory, parse_timestamp


def validate_memory_bank(memory_bank: Any, schema_version: Any) -> List[str]:
    """Return the structural problems of a memory bank; empty when well-formed."""
    if schema_version not in SUPPORTED_MEMORY_SCHEMAS:
        return [f"unsupported schema version {schema_version!r}"]
    if not isinstance(memory_bank, dict):
        return [f"memory bank is {type(memory_bank).__name__}, expected object"]

    problems = []
    for key, entry in memory_bank.items():
        if not isinstance(key, str) or not key.strip():
            problems.append("entry with empty key")
            continue
        if not isinstance(entry, dict):
            problems.append(f"entry '{key}' is not an object")
            continue
        if 'value' not in entry:
            problems.append(f"entry '{key}' has no value")
        if parse_timestamp(entry.get('updated_at')) is None:
            problems.append(f"entry '{key}' has invalid updated_at")
        tags = entry.get('tags', [])
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            problems.append(f"entry '{key}' has malformed tags")
    return problems


def validate_record(record: AgentRecord) -> List[str]:
    return validate_memory_bank(record.memory_bank, record.schema_version)


def validate_global_memory(global_memory: GlobalMemory) -> List[str]:
    problems = []
    for key in global_memory.knowledge:
        if not isinstance(key, str) or not key.strip():
            problems.append("knowledge entry with empty key")
    return problems


def coerce_memory_bank(memory_bank: Any, fallback_timestamp: str) -> Tuple[Dict[str, Any], List[str]]:
    """Coerce a memory bank into schema version 1.

    Returns the repaired bank and a description of every change made.
    Values are never dropped; only unusable keys are.
    """
    changes: List[str] = []

    if isinstance(memory_bank, list):
        pairs = {}
        for index, item in enumerate(memory_bank):
            if isinstance(item, dict) and isinstance(item.get('key'), str):
                pairs[item['key']] = {k: v for k, v in item.items() if k != 'key'}
            else:
                pairs[f"item_{index}"] = item
        changes.append("converted list memory bank to object")
        memory_bank = pairs
    elif not isinstance(memory_bank, dict):
        changes.append(f"replaced {type(memory_bank).__name__} memory bank with wrapped value")
        memory_bank = {} if memory_bank is None else {'value': memory_bank}

    repaired: Dict[str, Any] = {}
    for key, entry in memory_bank.items():
        if not isinstance(key, str) or not key.strip():
            changes.append("dropped entry with empty key")
            continue

        if not isinstance(entry, dict) or 'value' not in entry:
            entry = {'value': entry, 'updated_at': fallback_timestamp}
            changes.append(f"wrapped bare value of '{key}'")
        else:
            entry = dict(entry)

        if parse_timestamp(entry.get('updated_at')) is None:
            entry['updated_at'] = fallback_timestamp
            changes.append(f"reset updated_at of '{key}'")

        tags = entry.get('tags', [])
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            entry['tags'] = []
            changes.append(f"reset tags of '{key}'")

        repaired[key] = entry

    return repaired, changes
