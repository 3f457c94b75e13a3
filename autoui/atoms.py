# autoui/atoms.py
"""
Shared atom registry: named, persisted, pub/sub values that outlive any
single unit's regeneration.

get/set/subscribe are synchronous and listeners are notified inside the
set() call; persistence is scheduled afterwards and is best-effort. Only
the latest value of a key is written once earlier writes for it finish.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from autoui.durable_store import DurableStore
from autoui.entities import ATOM_KEY_PREFIX, atom_storage_key

logger = logging.getLogger("autoui_runtime")

_MISSING = object()


def values_equal(a: Any, b: Any) -> bool:
    if a is b:
        return True
    if type(a) is not type(b):
        return False
    try:
        return bool(a == b)
    except Exception:
        return False


class Atom:
    def __init__(self, registry: "AtomRegistry", key: str, default_value: Any = None):
        self.registry = registry
        self.key = key
        self.default_value = default_value
        self._value = default_value
        self._listeners: Set[Callable[[], None]] = set()

    def get(self) -> Any:
        return self._value

    def set(self, value_or_fn: Any) -> bool:
        """
        Set a new value (or apply an updater fn(prev) -> next).
        Returns False when the value is structurally unchanged, in which case
        no listener fires and nothing is persisted.
        """
        next_value = value_or_fn(self._value) if callable(value_or_fn) else value_or_fn
        if values_equal(self._value, next_value):
            return False
        self._value = next_value
        for fn in list(self._listeners):
            try:
                fn()
            except Exception as e:
                logger.warning(f"[atoms] listener failed for {self.key}: {e}")
        self.registry._persist(self.key, next_value)
        return True

    def subscribe(self, fn: Callable[[], None]) -> Callable[[], None]:
        self._listeners.add(fn)

        def unsubscribe() -> None:
            self._listeners.discard(fn)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def __repr__(self) -> str:
        return f"Atom(key={self.key!r}, value={self._value!r})"


class AtomRegistry:
    def __init__(self) -> None:
        self.atoms: Dict[str, Atom] = {}
        self.store: Optional[DurableStore] = None
        # values read from storage before anything asked for that key
        self._pending: Dict[str, Any] = {}
        self._persist_tasks: Set[asyncio.Task] = set()
        # latest unwritten text per key, drained by at most one writer task per key
        self._dirty: Dict[str, str] = {}
        self._writers: Dict[str, asyncio.Task] = {}

    def create(self, key: str, default_value: Any = None) -> Atom:
        existing = self.atoms.get(key)
        if existing is not None:
            return existing

        atom = Atom(self, key, default_value)
        pending = self._pending.pop(key, _MISSING)
        if pending is not _MISSING:
            atom._value = pending
        self.atoms[key] = atom
        return atom

    def get(self, key: str) -> Optional[Atom]:
        return self.atoms.get(key)

    def keys(self) -> List[str]:
        return list(self.atoms.keys())

    async def hydrate(self, store: DurableStore) -> int:
        """
        Load every persisted atom value once at startup. Values for keys that
        already have an atom are applied in place, the rest are stashed until
        create() is first called for them. Returns how many values were read.
        """
        self.store = store
        rows = await store.get_all()
        count = 0
        for row in rows:
            if not row.path.startswith(ATOM_KEY_PREFIX):
                continue
            key = row.path[len(ATOM_KEY_PREFIX):]
            try:
                value = json.loads(row.text)
            except (TypeError, ValueError):
                logger.warning(f"[atoms] skipping malformed persisted value for {key}")
                continue
            existing = self.atoms.get(key)
            if existing is not None:
                existing._value = value
            else:
                self._pending[key] = value
            count += 1
        return count

    async def flush(self) -> None:
        """Wait for every in-flight persist task."""
        while self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks), return_exceptions=True)

    # -----------------------
    # Persistence
    # -----------------------

    def _persist(self, key: str, value: Any) -> None:
        if self.store is None:
            return
        try:
            text = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.warning(f"[atoms] value for {key} is not JSON serialisable, not persisted: {e}")
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            try:
                self.store.put_sync(atom_storage_key(key), text)
            except Exception as e:
                logger.warning(f"[atoms] persist failed for {key}: {e}")
            return

        self._dirty[key] = text
        if key in self._writers:
            return
        task = loop.create_task(self._drain_key(key))
        self._writers[key] = task
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def _drain_key(self, key: str) -> None:
        try:
            while key in self._dirty:
                text = self._dirty.pop(key)
                try:
                    await self.store.put(atom_storage_key(key), text)
                except Exception as e:
                    logger.warning(f"[atoms] persist failed for {key}: {e}")
        finally:
            self._writers.pop(key, None)
