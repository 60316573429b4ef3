"""
Mapping Store Connection

Owns the SQLAlchemy engine and session factory behind the mapping store.
Every service call opens its own short-lived session; nothing is held
across requests, so the HTTP and CLI front ends can share one manager.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from ..config.settings import Settings
from ..models import Base

logger = logging.getLogger(__name__)

IN_MEMORY_SQLITE_URLS = ('sqlite://', 'sqlite:///:memory:')


def dialect_name(database_url: str) -> str:
    """Backend name without the driver, e.g. postgresql for postgresql+psycopg2"""
    return make_url(database_url).get_backend_name()


def redact_url(database_url: str) -> str:
    return make_url(database_url).render_as_string(hide_password=True)


def engine_options(database_url: str) -> Dict[str, Any]:
    """
    create_engine keyword arguments for a mapping store URL

    SQLite stores are used from worker threads during copies, and an
    in-memory store must hand every session the same connection or each
    one would see an empty schema.
    """
    options: Dict[str, Any] = {
        'echo': Settings.DATABASE_ECHO,
        'pool_pre_ping': True,
    }
    if dialect_name(database_url) == 'sqlite':
        options['connect_args'] = {'check_same_thread': False}
        if database_url in IN_MEMORY_SQLITE_URLS:
            options['poolclass'] = StaticPool
        return options

    options.update({
        'poolclass': QueuePool,
        'pool_size': Settings.DATABASE_POOL_SIZE,
        'max_overflow': Settings.DATABASE_MAX_OVERFLOW,
        'pool_timeout': 30,
        'pool_recycle': 3600,
    })
    return options


def _sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # rule links and filters rely on ON DELETE CASCADE
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """Lazily connected engine and session factory for the mapping store"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or Settings.get_database_url()
        self.engine: Optional[Engine] = None
        self._sessions: Optional[sessionmaker] = None

    @property
    def is_initialized(self) -> bool:
        return self._sessions is not None

    @property
    def dialect(self) -> str:
        return dialect_name(self.database_url)

    def initialize(self) -> None:
        """Create the engine and verify the store answers; safe to call repeatedly"""
        if self.is_initialized:
            return

        engine = create_engine(self.database_url, **engine_options(self.database_url))
        if self.dialect == 'sqlite':
            event.listen(engine, "connect", _sqlite_foreign_keys)

        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            engine.dispose()
            logger.error(f"Mapping store unreachable at {redact_url(self.database_url)}: {e}")
            raise

        self.engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        logger.info(f"Mapping store connected ({self.dialect})")

    def create_all(self) -> List[str]:
        """Create missing mapping store tables and return the full table list"""
        self.initialize()
        Base.metadata.create_all(bind=self.engine)
        tables = sorted(inspect(self.engine).get_table_names())
        logger.info(f"Mapping store schema ready: {len(tables)} tables")
        return tables

    def drop_all(self) -> None:
        self.initialize()
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("Mapping store tables dropped")

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Read session; rolled back on error and always closed

        Yields:
            SQLAlchemy session
        """
        self.initialize()
        session = self._sessions()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Session that commits when the block exits cleanly

        Yields:
            SQLAlchemy session within a transaction
        """
        with self.get_session() as session:
            yield session
            session.commit()

    def get_connection_info(self) -> Dict[str, Any]:
        """Connection summary for health checks; never raises"""
        info: Dict[str, Any] = {
            'database_type': self.dialect,
            'url': redact_url(self.database_url),
        }
        if not self.is_initialized:
            info['status'] = 'not_initialized'
            return info

        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            info.update(status='error', error=str(e))
            return info

        info['status'] = 'connected'
        return info

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Mapping store connections closed")
        self.engine = None
        self._sessions = None

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
