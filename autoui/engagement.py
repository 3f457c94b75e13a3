# autoui/engagement.py
"""
Per-unit interaction signals fed into every reasoning prompt.

EngagementRegistry  - interactions, overrides, dwell time and section hits
PinnedRegistry      - values the user set explicitly; the model is told not
                      to override them
"""

import copy
import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

TOP_SECTIONS = 5


@dataclass
class EngagementMetrics:
    interactions: int = 0
    last_interaction: float = 0.0
    dwell_time_ms: float = 0.0
    overrides: int = 0
    section_hits: Dict[str, int] = field(default_factory=dict)
    session_start: float = field(default_factory=time.time)


class EngagementRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: Dict[str, EngagementMetrics] = {}

    def _get_or_create(self, component_id: str) -> EngagementMetrics:
        metrics = self._metrics.get(component_id)
        if metrics is None:
            metrics = EngagementMetrics()
            self._metrics[component_id] = metrics
        return metrics

    def ensure(self, component_id: str) -> None:
        with self._lock:
            self._get_or_create(component_id)

    def track(self, component_id: str, section: Optional[str] = None) -> None:
        with self._lock:
            m = self._get_or_create(component_id)
            m.interactions += 1
            m.last_interaction = time.time()
            if section:
                m.section_hits[section] = m.section_hits.get(section, 0) + 1

    def track_override(self, component_id: str) -> None:
        with self._lock:
            m = self._get_or_create(component_id)
            m.overrides += 1
            m.last_interaction = time.time()

    def add_dwell(self, component_id: str, ms: float) -> None:
        with self._lock:
            self._get_or_create(component_id).dwell_time_ms += max(0.0, ms)

    def snapshot(self, component_id: str) -> Optional[EngagementMetrics]:
        with self._lock:
            m = self._metrics.get(component_id)
            return copy.deepcopy(m) if m is not None else None

    def describe(self, component_id: str, now: Optional[float] = None) -> str:
        m = self.snapshot(component_id)
        if m is None:
            return ""
        now = time.time() if now is None else now
        active = sorted(
            ((k, v) for k, v in m.section_hits.items() if v > 0),
            key=lambda kv: kv[1],
            reverse=True,
        )[:TOP_SECTIONS]
        sections = ", ".join(f"{k}: {v} interactions" for k, v in active) if active else "none tracked"

        lines = [
            "USER ENGAGEMENT (continuous evaluation):",
            f"  Interactions: {m.interactions}",
            f"  User overrides: {m.overrides}",
            f"  Dwell time: {round(m.dwell_time_ms / 1000.0)}s",
            f"  Active sections: {sections}",
        ]
        if m.last_interaction > 0:
            idle = now - m.last_interaction
            if idle > 0:
                lines.append(f"  Idle for: {round(idle)}s")
        return "\n".join(lines)


class PinnedRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pinned: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def pin(self, component_id: str, key: str, value: Any) -> None:
        with self._lock:
            self._pinned.setdefault(component_id, {})[key] = {"value": value, "timestamp": time.time()}

    def unpin(self, component_id: str, key: str) -> None:
        with self._lock:
            entries = self._pinned.get(component_id)
            if entries:
                entries.pop(key, None)

    def is_pinned(self, component_id: str, key: str) -> bool:
        with self._lock:
            return key in self._pinned.get(component_id, {})

    def get(self, component_id: str, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._pinned.get(component_id, {}).get(key)
            return entry["value"] if entry is not None else default

    def entries(self, component_id: str) -> Dict[str, Any]:
        with self._lock:
            return {k: v["value"] for k, v in self._pinned.get(component_id, {}).items()}

    def describe(self, component_id: str) -> str:
        entries = self.entries(component_id)
        if not entries:
            return ""
        lines = ["PINNED STATE (user-controlled, do NOT override these values):"]
        for k, v in entries.items():
            lines.append(f"  {k}: {json.dumps(v, ensure_ascii=False, default=repr)}")
        return "\n".join(lines)
