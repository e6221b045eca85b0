"""
Durable cache snapshot.

After each successful load the store is serialized as
``{records, metadata, timestamp}`` into one key-value slot. On startup a
snapshot younger than the freshness window seeds the store before any
network fetch. Corrupt or stale snapshots are discarded and logged,
never raised.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from tradedash.cache.record_store import RecordStore
from tradedash.state.database import Database

logger = structlog.get_logger(__name__)

SNAPSHOT_KEY = "trading_data_cache_v2"


class SnapshotStore:
    """Reads and writes the record store snapshot slot."""

    def __init__(self, db: Database, max_age: timedelta, key: str = SNAPSHOT_KEY):
        self.db = db
        self.max_age = max_age
        self.key = key

    def save(self, store: RecordStore) -> bool:
        """
        Persist the current store contents.

        Returns:
            True on success; failures are logged and reported as False
        """
        snapshot = store.export_snapshot()
        try:
            self.db.set_state(self.key, snapshot)
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.warning("snapshot_save_failed", key=self.key, error=str(e))
            return False

        logger.debug("snapshot_saved", key=self.key, records=len(snapshot["records"]))
        return True

    def discard(self) -> None:
        try:
            self.db.delete_state(self.key)
        except SQLAlchemyError as e:
            logger.warning("snapshot_discard_failed", key=self.key, error=str(e))

    async def seed(self, store: RecordStore) -> bool:
        """
        Seed ``store`` from a fresh snapshot.

        Returns:
            True if the store was seeded
        """
        try:
            snapshot = self.db.get_state(self.key)
        except (SQLAlchemyError, json.JSONDecodeError) as e:
            logger.warning("snapshot_corrupt", key=self.key, error=str(e))
            self.discard()
            return False

        if snapshot is None:
            return False

        age = self._age(snapshot)
        if age is None:
            logger.warning("snapshot_corrupt", key=self.key, error="missing or invalid timestamp")
            self.discard()
            return False
        if age > self.max_age:
            logger.info("snapshot_stale", key=self.key, age_seconds=round(age.total_seconds(), 1))
            self.discard()
            return False

        try:
            report = await store.restore_snapshot(snapshot)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("snapshot_corrupt", key=self.key, error=str(e))
            store.clear()
            self.discard()
            return False

        logger.info(
            "snapshot_restored",
            key=self.key,
            records=report.added,
            rejected=report.rejected,
            age_seconds=round(age.total_seconds(), 1),
        )
        return True

    @staticmethod
    def _age(snapshot: object) -> Optional[timedelta]:
        if not isinstance(snapshot, dict):
            return None
        try:
            written = datetime.fromisoformat(snapshot["timestamp"])
        except (KeyError, TypeError, ValueError):
            return None
        if written.tzinfo is None:
            written = written.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) - written
