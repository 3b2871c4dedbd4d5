"""Engine, session factory and transaction scope for the relational store."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StoreConflict, StoreUnavailable
from .models import Base

log = logging.getLogger(__name__)


class Database:
    """Owns the SQLAlchemy engine and hands out transactional sessions.

    Store failures leave this class as pipeline errors: unique-key
    contention (and SQLite's "database is locked") becomes
    ``StoreConflict``, anything else at the driver level becomes
    ``StoreUnavailable``.

    Args:
        url: SQLAlchemy database URL.
        echo: Log emitted SQL.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        engine_args: dict = {}
        if url.startswith("sqlite"):
            engine_args["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if url in ("sqlite://", "sqlite:///:memory:"):
                engine_args["poolclass"] = StaticPool
            else:
                _ensure_sqlite_parent(url)
        self.engine = create_engine(url, echo=echo, **engine_args)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _sqlite_pragmas)
        self.Session = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def init_db(self) -> None:
        """Create all tables that do not exist yet."""
        try:
            Base.metadata.create_all(self.engine)
        except OperationalError as exc:
            raise StoreUnavailable(f"cannot initialise schema: {exc}") from exc
        log.info("event=db_initialised url=%s", self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""
        session = self.Session()
        try:
            yield session
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise StoreConflict(f"unique key contention: {exc.orig}") from exc
        except OperationalError as exc:
            session.rollback()
            if "locked" in str(exc).lower():
                raise StoreConflict(f"database locked: {exc.orig}") from exc
            raise StoreUnavailable(f"store unreachable: {exc.orig}") from exc
        except DBAPIError as exc:
            session.rollback()
            raise StoreUnavailable(f"store error: {exc.orig}") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def _sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _ensure_sqlite_parent(url: str) -> None:
    prefix = "sqlite:///"
    if url.startswith(prefix):
        Path(url[len(prefix):]).parent.mkdir(parents=True, exist_ok=True)
