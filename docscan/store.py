"""
Scan history and settings storage.

An append-only log of completed exports plus a small key/value table for
user settings, kept in SQLite (or any SQLAlchemy URL).
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Generator

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, String, Text, create_engine, func
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()

RECORD_TYPES = ("document", "idcard")


class ScanRecordRow(Base):
    """One completed export."""

    __tablename__ = "scans"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    type = Column(String, nullable=False, index=True)
    page_count = Column(Integer, nullable=False, default=1)
    filename = Column(String, nullable=False)
    ocr_text = Column(Text, nullable=False, default="")
    date = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<ScanRecordRow(id={self.id}, type={self.type}, filename={self.filename})>"


class SettingRow(Base):
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(JSON)


@dataclass(frozen=True)
class ScanRecord:
    type: str
    page_count: int
    filename: str
    ocr_text: str = ""
    date: datetime | None = None
    id: int | None = None

    @classmethod
    def _from_row(cls, row: ScanRecordRow) -> "ScanRecord":
        return cls(
            id=row.id,
            type=row.type,
            page_count=row.page_count,
            filename=row.filename,
            ocr_text=row.ocr_text,
            date=row.date,
        )


class ScanStore:
    """Persistent record store for scans and settings."""

    def __init__(self, database_url: str = "sqlite:///docscan.db"):
        """
        Open (and create if needed) the store.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.database_url = database_url

        if database_url.startswith("sqlite"):
            kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in database_url or database_url == "sqlite://":
                # Every session must see the same in-memory database
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(database_url, echo=False, **kwargs)
        else:
            self.engine = create_engine(database_url, echo=False)

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        Base.metadata.create_all(bind=self.engine)
        self._last_id = 0

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Transactional scope: commit on success, rollback on error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _next_id(self) -> int:
        # Millisecond timestamp, bumped when two saves land in the same ms
        candidate = int(time.time() * 1000)
        self._last_id = max(candidate, self._last_id + 1)
        return self._last_id

    # ------------------------------------------------------------------
    # Scan records
    # ------------------------------------------------------------------

    def save(self, record: ScanRecord) -> ScanRecord:
        """
        Append a record.

        Returns:
            The stored record with its id and date filled in
        """
        if record.type not in RECORD_TYPES:
            raise ValueError(f"Unknown record type: {record.type}")

        row = ScanRecordRow(
            id=record.id if record.id is not None else self._next_id(),
            type=record.type,
            page_count=record.page_count,
            filename=record.filename,
            ocr_text=record.ocr_text,
            date=record.date or datetime.now(),
        )
        with self.session_scope() as session:
            session.add(row)
            session.flush()
            saved = ScanRecord._from_row(row)
        logger.debug("Saved scan record %s", saved.id)
        return saved

    def get(self, record_id: int) -> ScanRecord | None:
        with self.session_scope() as session:
            row = session.get(ScanRecordRow, record_id)
            return ScanRecord._from_row(row) if row else None

    def list(self, type: str | None = None, limit: int | None = None) -> list[ScanRecord]:
        """
        List records newest first.

        Args:
            type: Only records of this type ("document" or "idcard")
            limit: Maximum number of records
        """
        with self.session_scope() as session:
            query = session.query(ScanRecordRow)
            if type is not None:
                query = query.filter(ScanRecordRow.type == type)
            query = query.order_by(ScanRecordRow.date.desc(), ScanRecordRow.id.desc())
            if limit is not None:
                query = query.limit(limit)
            return [ScanRecord._from_row(row) for row in query.all()]

    def delete(self, record_id: int) -> bool:
        with self.session_scope() as session:
            row = session.get(ScanRecordRow, record_id)
            if row is None:
                return False
            session.delete(row)
            return True

    def delete_older_than(self, hours: float) -> int:
        """
        Prune records older than the given age.

        Returns:
            Number of records deleted
        """
        cutoff = datetime.now() - timedelta(hours=hours)
        with self.session_scope() as session:
            count = session.query(ScanRecordRow).filter(ScanRecordRow.date < cutoff).delete()
        if count:
            logger.info("Pruned %d scan record(s) older than %sh", count, hours)
        return count

    def clear(self) -> None:
        """Delete every scan record."""
        with self.session_scope() as session:
            session.query(ScanRecordRow).delete()

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str, default: Any = None) -> Any:
        with self.session_scope() as session:
            row = session.get(SettingRow, key)
            return row.value if row is not None else default

    def set_setting(self, key: str, value: Any) -> None:
        with self.session_scope() as session:
            session.merge(SettingRow(key=key, value=value))

    def delete_setting(self, key: str) -> None:
        with self.session_scope() as session:
            session.query(SettingRow).filter(SettingRow.key == key).delete()

    def all_settings(self) -> dict[str, Any]:
        with self.session_scope() as session:
            return {row.key: row.value for row in session.query(SettingRow).all()}

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def storage_size(self) -> int:
        """Approximate number of bytes held by records and settings."""
        with self.session_scope() as session:
            text_bytes = session.query(
                func.coalesce(func.sum(func.length(ScanRecordRow.ocr_text) + func.length(ScanRecordRow.filename)), 0)
            ).scalar()
            settings = session.query(SettingRow).all()
            settings_bytes = sum(len(row.key) + len(repr(row.value)) for row in settings)
        return int(text_bytes) + settings_bytes

    def clear_all(self) -> None:
        """Factory reset: drop all records and settings."""
        with self.session_scope() as session:
            session.query(ScanRecordRow).delete()
            session.query(SettingRow).delete()
        logger.info("Cleared all stored data")

    def close(self) -> None:
        self.engine.dispose()
