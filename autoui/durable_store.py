# autoui/durable_store.py

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List

from sqlalchemy import delete
from sqlalchemy.orm import Session

from autoui.entities import VfsRow

logger = logging.getLogger("autoui_runtime")


@dataclass(frozen=True)
class StoredRow:
    path: str
    text: str


class DurableStore:
    """
    Durable key/text storage shared by source rows and atom values.

    The two namespaces live in the same table and are told apart only by
    key prefix (see entities.ATOM_KEY_PREFIX). Every method has a blocking
    variant (suffix _sync) and an async one that runs it in a worker thread.
    Blocking calls are serialised on one lock: an in-memory SQLite database
    shares a single connection across worker threads.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.SessionFactory = session_factory
        self._lock = threading.Lock()

    # -----------------------
    # Blocking
    # -----------------------

    def get_all_sync(self) -> List[StoredRow]:
        with self._lock:
            session = self.SessionFactory()
            try:
                rows = session.query(VfsRow).order_by(VfsRow.path.asc()).all()
                return [StoredRow(path=r.path, text=r.text or "") for r in rows]
            finally:
                session.close()

    def put_sync(self, path: str, text: str) -> None:
        with self._lock:
            session = self.SessionFactory()
            try:
                session.merge(VfsRow(path=str(path), text=text if text is not None else ""))
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def clear_sync(self) -> None:
        with self._lock:
            session = self.SessionFactory()
            try:
                session.execute(delete(VfsRow))
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    # -----------------------
    # Async
    # -----------------------

    async def get_all(self) -> List[StoredRow]:
        return await asyncio.to_thread(self.get_all_sync)

    async def put(self, path: str, text: str) -> None:
        await asyncio.to_thread(self.put_sync, path, text)

    async def clear(self) -> None:
        await asyncio.to_thread(self.clear_sync)
