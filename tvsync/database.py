"""On-device persistence backing the entity stores."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import MetaData, create_engine, delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData(
        naming_convention={
            "ix": "ix_%(column_0_label)s",
            "uq": "uq_%(table_name)s_%(column_0_name)s",
            "pk": "pk_%(table_name)s",
        }
    )


class Database:
    """Thin wrapper managing the SQLAlchemy engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: Engine = create_engine(database_url, future=True)
        self.session_factory: sessionmaker[Session] = sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        # Registers the mapped tables on ``Base.metadata``.
        from . import db_models  # noqa: F401

        Base.metadata.create_all(self._engine)

    def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        self._engine.dispose()


class KeyValueStore:
    """JSON key-value store with the never-raise contract of local storage.

    Reads that fail (missing table, corrupt JSON) return the supplied default
    and writes that fail are logged and dropped.
    """

    def __init__(self, database: Database):
        self._database = database

    def get(self, key: str, default: Any = None) -> Any:
        from .db_models import KeyValueRecord

        try:
            with self._database.session_factory() as session:
                raw = session.scalar(
                    select(KeyValueRecord.value).where(KeyValueRecord.key == key)
                )
        except SQLAlchemyError as exc:
            logger.warning("Local store read failed for %s: %s", key, exc)
            return default
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt local value for %s", key)
            return default

    def set(self, key: str, value: Any) -> None:
        from .db_models import KeyValueRecord

        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as exc:
            logger.warning("Refusing to store unserialisable value for %s: %s", key, exc)
            return
        try:
            with self._database.session_factory.begin() as session:
                record = session.get(KeyValueRecord, key)
                if record is None:
                    session.add(KeyValueRecord(key=key, value=payload))
                else:
                    record.value = payload
        except SQLAlchemyError as exc:
            logger.warning("Local store write failed for %s: %s", key, exc)

    def remove(self, key: str) -> None:
        from .db_models import KeyValueRecord

        try:
            with self._database.session_factory.begin() as session:
                session.execute(delete(KeyValueRecord).where(KeyValueRecord.key == key))
        except SQLAlchemyError as exc:
            logger.warning("Local store delete failed for %s: %s", key, exc)
