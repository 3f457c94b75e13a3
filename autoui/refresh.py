# autoui/refresh.py
"""
Hot-swap reconciliation between freshly loaded class definitions and the
unit instances that are already mounted.

Contract:
- every loaded class is registered under an identity "<vfs path> <ClassName>"
- every live instance sits in a MountedInstance tracked under its identity
- perform_refresh() walks the tracked holders once:
    same class object              -> kept
    new class, same STATE_KEYS     -> swapped (new instance, old state dict)
    otherwise (or identity gone)   -> remounted (fresh state)
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("autoui_runtime")

KEPT = "kept"
SWAPPED = "swapped"
REMOUNTED = "remounted"


def state_signature(definition: Any) -> Optional[Tuple[str, ...]]:
    if definition is None:
        return None
    keys = getattr(definition, "STATE_KEYS", None) or ()
    return tuple(sorted(str(k) for k in keys))


class MountedInstance:
    """
    Holder for one live instance of a loaded class.

    build(definition, state) creates the instance; state is the dict the
    instance keeps its own data in, and the only thing carried across a swap.
    """

    def __init__(self, identity: str, definition: Any, build: Callable[[Any, Dict[str, Any]], Any]):
        self.identity = identity
        self.build = build
        self.definition = None
        self.instance = None
        self.state: Dict[str, Any] = {}
        self.generation = 0
        self.mount(definition)

    def mount(self, definition: Any, state: Optional[Dict[str, Any]] = None) -> None:
        next_state = state if state is not None else {}
        instance = self.build(definition, next_state) if definition is not None else None
        self.definition = definition
        self.instance = instance
        self.state = next_state
        self.generation += 1


@dataclass
class RefreshReport:
    swapped: List[str] = field(default_factory=list)
    remounted: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.swapped or self.remounted)


class RefreshRuntime:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._definitions: Dict[str, Any] = {}
        self._tracked: Dict[str, List[MountedInstance]] = {}
        self.last_report: Optional[RefreshReport] = None

    # -----------------------
    # Definitions
    # -----------------------

    def begin_generation(self) -> None:
        """Forget every definition; called before a new bundle registers its classes."""
        with self._lock:
            self._definitions = {}

    def register(self, identity: str, definition: Any) -> None:
        with self._lock:
            self._definitions[identity] = definition

    def definition(self, identity: str) -> Any:
        with self._lock:
            return self._definitions.get(identity)

    def identities(self) -> List[str]:
        with self._lock:
            return sorted(self._definitions.keys())

    # -----------------------
    # Instances
    # -----------------------

    def track(self, identity: str, holder: MountedInstance) -> None:
        with self._lock:
            holders = self._tracked.setdefault(identity, [])
            if holder not in holders:
                holders.append(holder)

    def untrack(self, identity: str, holder: MountedInstance) -> None:
        with self._lock:
            holders = self._tracked.get(identity)
            if not holders:
                return
            if holder in holders:
                holders.remove(holder)
            if not holders:
                self._tracked.pop(identity, None)

    def tracked_count(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._tracked.values())

    def reconcile(self, holder: MountedInstance, definition: Any) -> str:
        if definition is holder.definition:
            return KEPT
        if definition is not None and state_signature(definition) == state_signature(holder.definition):
            try:
                holder.mount(definition, holder.state)
                return SWAPPED
            except Exception as e:
                logger.warning(f"[refresh] swap failed for {holder.identity}, remounting: {e}")
        try:
            holder.mount(definition, None)
        except Exception as e:
            # a broken constructor leaves the holder empty; the render boundary reports it
            logger.warning(f"[refresh] remount failed for {holder.identity}: {e}")
            holder.definition = definition
            holder.instance = None
            holder.state = {}
        return REMOUNTED

    def perform_refresh(self) -> RefreshReport:
        with self._lock:
            pairs = [(identity, list(holders)) for identity, holders in self._tracked.items()]
            definitions = dict(self._definitions)

        report = RefreshReport()
        for identity, holders in pairs:
            latest = definitions.get(identity)
            for holder in holders:
                outcome = self.reconcile(holder, latest)
                if outcome == SWAPPED:
                    report.swapped.append(identity)
                elif outcome == REMOUNTED:
                    report.remounted.append(identity)

        if report.changed:
            logger.debug(f"[refresh] swapped={report.swapped} remounted={report.remounted}")
        self.last_report = report
        return report
