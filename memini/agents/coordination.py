"""Fan-in point for spawned agents that share a coordination key."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Dict, List

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoordinationRecord:
    window_id: int
    label: str
    result: str

    def to_dict(self) -> dict:
        return asdict(self)


class CoordinationStore:
    """Append-only results grouped by key.

    Records are kept for the lifetime of the process; nothing is pruned.
    collect() never blocks and may return an empty list.
    """

    def __init__(self):
        self._records: Dict[str, List[CoordinationRecord]] = {}

    def append(self, key: str, record: CoordinationRecord) -> None:
        self._records.setdefault(key, []).append(record)
        LOGGER.debug(f"Coordination '{key}': +#{record.window_id} ({len(self._records[key])} total)")

    def collect(self, key: str) -> List[CoordinationRecord]:
        return list(self._records.get(key, []))

    def keys(self) -> List[str]:
        return list(self._records)

    def __len__(self) -> int:
        return sum(len(records) for records in self._records.values())
