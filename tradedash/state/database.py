"""
SQLite persistence for dashboard state.

Tables:
- system_state: JSON key-value slots (cache snapshot, last refresh info)
"""

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

import structlog
from sqlalchemy import Column, DateTime, String, Text, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = structlog.get_logger(__name__)

Base = declarative_base()


class SystemState(Base):
    """Key-value store for persisted dashboard state."""

    __tablename__ = "system_state"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)  # JSON-encoded
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))


class Database:
    """
    Database manager for local state persistence.

    Only holds derived, re-fetchable data: losing the file costs one full
    reload from the datastore.
    """

    def __init__(self, db_path: Path):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=False,
            connect_args={"check_same_thread": False},
        )
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        # create_all() is idempotent - creates missing tables, skips existing ones
        Base.metadata.create_all(self.engine)
        logger.info("database_initialized", path=str(self.db_path))

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Get a database session with automatic commit/rollback."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def set_state(self, key: str, value: Any) -> None:
        """Store a JSON-encodable value under ``key``."""
        encoded = json.dumps(value)
        with self.session() as session:
            state = session.get(SystemState, key)
            if state:
                state.value = encoded
            else:
                session.add(SystemState(key=key, value=encoded))

    def get_state(self, key: str, default: Any = None) -> Any:
        """
        Read the value stored under ``key``.

        Raises:
            json.JSONDecodeError: If the stored payload is corrupt
        """
        with self.session() as session:
            state = session.get(SystemState, key)
            if state is None:
                return default
            return json.loads(state.value)

    def delete_state(self, key: str) -> bool:
        """Delete ``key``; True if it existed."""
        with self.session() as session:
            result = session.query(SystemState).filter(SystemState.key == key).delete()
            return result > 0

    def close(self) -> None:
        """Dispose pooled connections."""
        self.engine.dispose()
        logger.info("database_connections_closed")
