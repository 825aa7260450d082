import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from quota.config import cfg
from quota.events import E, log_event
from quota.log import get_logger
from quota.models.base import Base

logger = get_logger(__name__)

DEFAULT_DB_URL = "sqlite:///data/quota.db"


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        if url in ("sqlite://", "sqlite:///:memory:"):
            # 内存库需在所有线程间共享同一连接
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        path = url.split("sqlite:///", 1)[-1]
        folder = os.path.dirname(os.path.abspath(path))
        if folder:
            os.makedirs(folder, exist_ok=True)
        # 文件库并发写入时等待锁释放，而不是立即报 database is locked
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True)


class Database:
    def __init__(self, url: Optional[str] = None):
        self.url = str(url or cfg.get("db", DEFAULT_DB_URL) or DEFAULT_DB_URL)
        self._engine: Optional[Engine] = None
        self._session_factory = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = _build_engine(self.url)
            self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        return self._engine

    def get_session(self) -> Session:
        _ = self.engine
        return self._session_factory()

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine)
        log_event(logger, E.SYSTEM_DB_INIT, url=self.engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None


DB = Database()
