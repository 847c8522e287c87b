"""Database engine and transaction scope shared by the ledgers."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from copy_trading.config import Settings
from copy_trading.db.models import Base
from copy_trading.errors import LedgerUnavailable
from copy_trading.utils.logging import get_logger


class Database:
    """Owns the engine and hands out one short transaction per ledger call."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self._url = url
        self._logger = get_logger("copy_trading.db")
        self.engine = _build_engine(url, echo=echo)
        self._session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> Database:
        return cls(settings.database_url, echo=settings.database_echo)

    @property
    def is_sqlite(self) -> bool:
        return self.engine.dialect.name == "sqlite"

    def create_all(self) -> None:
        """Create missing tables."""
        Base.metadata.create_all(self.engine)
        self._logger.info("schema_ready", tables=sorted(Base.metadata.tables))

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Commit on success, roll back on any error.

        Connectivity failures surface as ``LedgerUnavailable`` so callers can
        treat them as retriable infrastructure errors.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except (OperationalError, InterfaceError) as exc:
            session.rollback()
            self._logger.warning("ledger_unavailable", error=str(exc.orig or exc))
            raise LedgerUnavailable(str(exc.orig or exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def _build_engine(url: str, *, echo: bool) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
        )

    engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # pysqlite: take the write lock at BEGIN so concurrent writers queue on
    # the busy timeout instead of failing on lock upgrade.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine
