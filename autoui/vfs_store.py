# autoui/vfs_store.py

import logging
from typing import Callable, Dict, Iterable, List, Optional

from autoui.durable_store import DurableStore, StoredRow
from autoui.entities import is_atom_key

logger = logging.getLogger("autoui_runtime")


class VirtualSourceStore:
    """
    In-memory map path -> source text, written through to the durable store.

    - Last write wins, there is no per-path locking: writes that belong to
      authoring must be issued from inside an AuthoringQueue operation.
    - A persistence failure is logged and swallowed; the in-memory value
      stays authoritative for the rest of the session.
    """

    def __init__(self, store: DurableStore, on_change: Optional[Callable[[str, str], None]] = None):
        self.store = store
        self.on_change = on_change
        self._files: Dict[str, str] = {}

    def get(self, path: str) -> Optional[str]:
        return self._files.get(path)

    def has(self, path: str) -> bool:
        return path in self._files

    def list(self) -> List[str]:
        return sorted(self._files.keys())

    def snapshot(self) -> Dict[str, str]:
        return dict(self._files)

    async def set(self, path: str, text: str) -> None:
        self._files[path] = text
        self._notify(path, text)
        try:
            await self.store.put(path, text)
        except Exception as e:
            logger.warning(f"[vfs] persist failed for {path}: {e}")

    async def clear(self) -> None:
        """
        Wipes the durable store (atoms included). The caller must reload or
        restart the runtime afterwards.
        """
        self._files.clear()
        await self.store.clear()

    def load_rows(self, rows: Iterable[StoredRow]) -> int:
        """
        Populate from durable rows, skipping atom entries. Returns how many
        source rows were loaded.
        """
        loaded = 0
        for row in rows:
            if is_atom_key(row.path):
                continue
            self._files[row.path] = row.text
            loaded += 1
        return loaded

    async def seed(self, seeds: Dict[str, str]) -> None:
        for path, text in seeds.items():
            await self.set(path, text)

    def _notify(self, path: str, text: str) -> None:
        if not self.on_change:
            return
        try:
            self.on_change(path, text)
        except Exception as e:
            logger.warning(f"[vfs] on_change callback failed for {path}: {e}")
