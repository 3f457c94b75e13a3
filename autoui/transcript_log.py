import time
import threading
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional
from uuid import uuid4


TRANSCRIPT_CAPACITY = 100


@dataclass
class TranscriptEntry:
    id: str
    timestamp: float
    source: str
    system: str = ""
    messages: List[Any] = field(default_factory=list)
    tools: List[Any] = field(default_factory=list)
    response: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0
    usage: Optional[Dict[str, int]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TranscriptLog:
    """
    Bounded, write-only (from the runtime's side) log of model calls and
    tool dispatches:
    - ring buffer, oldest entry evicted once capacity is reached
    - thread-safe (observability tooling may read from another thread)
    """

    def __init__(self, capacity: int = TRANSCRIPT_CAPACITY):
        self.capacity = capacity
        self._lock = threading.Lock()
        self._items: deque = deque(maxlen=capacity)

    def push(
        self,
        source: str,
        *,
        system: str = "",
        messages: Optional[List[Any]] = None,
        tools: Optional[List[Any]] = None,
        response: Any = None,
        error: Optional[str] = None,
        duration_ms: float = 0.0,
        usage: Optional[Dict[str, int]] = None,
    ) -> TranscriptEntry:
        entry = TranscriptEntry(
            id=uuid4().hex[:8],
            timestamp=time.time(),
            source=source,
            system=system,
            messages=list(messages or []),
            tools=list(tools or []),
            response=response,
            error=error,
            duration_ms=duration_ms,
            usage=usage,
        )
        with self._lock:
            self._items.append(entry)
        return entry

    def snapshot(self) -> List[TranscriptEntry]:
        """
        Returns a COPY of the entries, oldest first.
        """
        with self._lock:
            return list(self._items)

    def by_source(self, prefix: str) -> List[TranscriptEntry]:
        with self._lock:
            return [e for e in self._items if e.source.startswith(prefix)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
