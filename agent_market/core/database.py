"""
Database utilities and connection management.

WHAT: SQLite database setup with WAL mode
WHY: Store listings, payment records and archived sessions
HOW: SQLAlchemy sync engine with WAL mode, session context manager
"""

from sqlalchemy import create_engine, text, event
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from pathlib import Path

from ..utils.logger import get_logger

logger = get_logger(__name__)

# Base for models
Base = declarative_base()


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


class Database:
    """Engine and session factory for one database URL."""

    def __init__(self, url: str, *, echo: bool = False):
        self.url = url

        engine_kwargs = {"echo": echo, "future": True}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}  # Allow multi-threaded access
            if _is_memory_url(url):
                # One shared connection, otherwise each connection gets its own empty database
                engine_kwargs["poolclass"] = StaticPool
            else:
                data_dir = Path(url.replace("sqlite:///", "")).parent
                data_dir.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(url, **engine_kwargs)

        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragma)

        self.SessionLocal = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            autoflush=False,
            autocommit=False
        )

    @contextmanager
    def session(self):
        """
        Context manager for database session.

        Usage:
            with db.session() as s:
                # use session
                pass

        Yields:
            Session: SQLAlchemy session
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init(self):
        """Create all tables."""
        # Register ORM tables on Base.metadata
        from . import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Database initialized ({self.url})")

    def ping(self) -> dict:
        """
        Check database connectivity.

        Returns:
            Dict with status and info
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(text("SELECT 1"))
                result.fetchone()

            return {
                "available": True,
                "url": self.url,
                "error": None
            }
        except Exception as e:
            logger.error(f"Database ping failed: {e}")
            return {
                "available": False,
                "url": self.url,
                "error": str(e)
            }

    def close(self):
        """Close database connections."""
        self.engine.dispose()
        logger.info("Database connections closed")


def _set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable WAL mode for better concurrency."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")  # Enable FK constraints
    cursor.close()
