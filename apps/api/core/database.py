"""
Engine, session factory and declarative base.

Transaction ownership: services flush, the caller commits. For HTTP
requests that is ``get_db``; Celery tasks and scripts take a session from
``get_db_sync`` and commit themselves.
"""
import logging
import time

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from core.config import settings

logger = logging.getLogger(__name__)

CONNECT_ATTEMPTS = 3


def build_database_url() -> str:
    """DATABASE_URL if set, else a Postgres URL from the POSTGRES_* parts."""
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    return "postgresql://{user}:{password}@{host}:{port}/{db}".format(
        user=settings.POSTGRES_USER,
        password=settings.POSTGRES_PASSWORD,
        host=settings.POSTGRES_HOST,
        port=settings.POSTGRES_PORT,
        db=settings.POSTGRES_DB,
    )


DATABASE_URL = build_database_url()


def _make_engine(url: str):
    if url.startswith("sqlite"):
        # One shared connection keeps an in-memory database alive across sessions.
        return create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=settings.DEBUG,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        echo=settings.DEBUG,
    )


engine = _make_engine(DATABASE_URL)

# Rows stay readable after commit; routers serialize them post-commit.
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

Base = declarative_base()


def _open_session() -> Session:
    """Session with a live connection, retrying briefly while the database starts."""
    for attempt in range(1, CONNECT_ATTEMPTS + 1):
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            return db
        except OperationalError as e:
            db.close()
            if attempt == CONNECT_ATTEMPTS:
                logger.error(f"Database unreachable after {CONNECT_ATTEMPTS} attempts: {e}")
                raise
            logger.warning(f"Database connect attempt {attempt} failed; retrying")
            time.sleep(0.1 * 2 ** (attempt - 1))


def get_db():
    """
    FastAPI dependency: one session and one transaction per request.

    Commits when the handler returns and rolls back when it raises. A
    stale plan version surfaces on flush inside the handler, so the
    rollback here also discards any partial repair.
    """
    db = _open_session()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db_sync() -> Session:
    """Plain session for tasks and scripts; the caller commits or rolls back."""
    return SessionLocal()


def check_db_connection() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
    return True
