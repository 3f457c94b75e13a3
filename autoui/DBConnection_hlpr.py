import os
import logging
from typing import Callable

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from autoui.entities import Base

logger = logging.getLogger("autoui_runtime")

DEFAULT_DATABASE_URL = "sqlite:///autoui_vfs.db"


class DBConnection:
    def __init__(self, database_url: str | None = None) -> None:
        # !###############################################
        # !   EXPLICIT URL WINS, THEN DATABASE_URL IN
        # !   THE .ENV FILE, THEN A LOCAL SQLITE FILE
        # !###############################################
        self.DATABASE_URL = database_url or os.getenv("DATABASE_URL", "") or DEFAULT_DATABASE_URL
        self.IS_SQLITE = self.DATABASE_URL.startswith("sqlite")
        self.IS_MEMORY = self.IS_SQLITE and (
            self.DATABASE_URL in ("sqlite://", "sqlite:///:memory:", "sqlite+pysqlite://", "sqlite+pysqlite:///:memory:")
        )
        self._engine = None
        self._sessionmaker = None

    # -------- Engine --------
    def get_engine(self):
        if self._engine is None:
            kwargs = {"future": True, "pool_pre_ping": True}
            if self.IS_SQLITE:
                # sessions are opened from asyncio.to_thread workers
                kwargs["connect_args"] = {"check_same_thread": False}
                if self.IS_MEMORY:
                    kwargs["poolclass"] = StaticPool
            logger.info(f"[DB] Connecting to: {self._redacted_url()}")
            self._engine = create_engine(self.DATABASE_URL, **kwargs)
            Base.metadata.create_all(self._engine)
        return self._engine

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> Callable[[], Session]:
        if not getattr(self, "_sessionmaker", None):
            self._sessionmaker = sessionmaker(
                bind=self.get_engine(),
                autoflush=False,
                autocommit=False,
                future=True,
            )

        def _factory() -> Session:
            return self._sessionmaker()

        return _factory

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._sessionmaker = None

    def _redacted_url(self) -> str:
        url = self.DATABASE_URL
        if "@" in url and "://" in url:
            scheme, rest = url.split("://", 1)
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return url
