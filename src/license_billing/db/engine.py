"""
Database engine and session management
PostgreSQL in staging/prod, SQLite accepted for dev and tests
"""
import logging
from typing import Generator

import psycopg2
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError, DisconnectionError

from ..config import config

logger = logging.getLogger(__name__)


def build_engine(database_url: str = None):
    """Create an engine with pool settings suited to the backend"""
    url = database_url or config.DATABASE_URL

    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=False,
        )

    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_recycle=config.DB_POOL_RECYCLE,
        pool_timeout=config.DB_POOL_TIMEOUT,
        echo=False,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 60,
            "keepalives_interval": 10,
            "keepalives_count": 3,
            "application_name": "license_billing",
            "options": (
                f"-c statement_timeout={config.DB_STATEMENT_TIMEOUT} "
                f"-c idle_in_transaction_session_timeout=20000"
            ),
        }
    )


def _is_connection_error(exception) -> bool:
    if exception is None:
        return False
    if isinstance(exception, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        return True
    error_msg = str(exception).lower()
    return "ssl" in error_msg or "connection has been closed" in error_msg or "connection reset" in error_msg


engine = build_engine()


@event.listens_for(engine, "invalidate")
def receive_invalidate(dbapi_conn, connection_record, exception):
    """Called when a pooled connection is invalidated"""
    if _is_connection_error(exception):
        logger.warning(f"[POOL] Connection invalidated after connection error: {exception}")
    else:
        logger.warning(f"[POOL] Connection invalidated: {exception}")


@event.listens_for(engine, "connect")
def receive_connect(dbapi_conn, connection_record):
    """Called when a new connection is created"""
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("New database connection created")


# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Request-scoped database session.
    Use as FastAPI dependency: db: Session = Depends(get_db)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_database_health() -> bool:
    """Run a trivial query against the pool"""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return True
    except (OperationalError, DisconnectionError) as e:
        logger.error(f"Database health check failed: {e}")
        return False
    finally:
        db.close()
