import time
import threading
from collections import deque
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


MUTATION_CAPACITY = 50


class MutationOutcome(str, Enum):
    SWAP = "swap"
    REMOUNT = "remount"
    CRASH_RECOVERY = "crash-recovery"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class MutationRecord:
    id: str
    timestamp: float
    component_id: str
    trigger: str
    previous_source: str
    new_source: str
    outcome: MutationOutcome

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["outcome"] = self.outcome.value
        return out


class MutationHistory:
    """
    Append-only audit of source changes, capped at MUTATION_CAPACITY
    (oldest dropped regardless of component).

    This is the only source of rollback targets: the previous known-good
    source of a unit is the previous_source of its most recent record that
    has one.
    """

    def __init__(self, capacity: int = MUTATION_CAPACITY):
        self.capacity = capacity
        self._lock = threading.Lock()
        self._items: deque = deque(maxlen=capacity)

    def record(
        self,
        component_id: str,
        trigger: str,
        previous_source: str,
        new_source: str,
        outcome: MutationOutcome = MutationOutcome.SWAP,
    ) -> MutationRecord:
        entry = MutationRecord(
            id=uuid4().hex[:8],
            timestamp=time.time(),
            component_id=component_id,
            trigger=trigger,
            previous_source=previous_source or "",
            new_source=new_source or "",
            outcome=MutationOutcome(outcome),
        )
        with self._lock:
            self._items.append(entry)
        return entry

    def previous_source(self, component_id: str) -> Optional[str]:
        with self._lock:
            for entry in reversed(self._items):
                if entry.component_id == component_id and entry.previous_source:
                    return entry.previous_source
        return None

    def for_component(self, component_id: str) -> List[MutationRecord]:
        with self._lock:
            return [e for e in self._items if e.component_id == component_id]

    def snapshot(self) -> List[MutationRecord]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
