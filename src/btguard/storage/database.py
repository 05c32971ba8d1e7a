"""
Preference Database.

Durable key-value storage of string sets on SQLite. Every multi-key
write happens in a single transaction so readers never observe a
partially written policy.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterable, Mapping

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from btguard.storage.models import Base, Preference


logger = logging.getLogger(__name__)


def encode_string_set(values: Iterable[str]) -> str:
    """Serialize a string set canonically (sorted, compact JSON)."""
    return json.dumps(sorted(set(values)), separators=(",", ":"))


def decode_string_set(raw: str | None) -> set[str]:
    """Deserialize a stored string set. Non-string members are dropped."""
    if not raw:
        return set()
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("Stored value is not a list")
    members = {item for item in data if isinstance(item, str)}
    dropped = sum(1 for item in data if not isinstance(item, str))
    if dropped:
        logger.warning("Dropped %d non-string member(s) from a stored set", dropped)
    return members


class PreferenceDatabase:
    """
    SQLite-backed store for namespaced string-set preferences.

    Absent keys read as None so callers can tell "never written"
    apart from "written empty".
    """

    def __init__(
        self,
        db_path: str | Path,
        wal_mode: bool = True,
        create_if_missing: bool = True,
    ) -> None:
        """
        Initialize the preference database.

        Args:
            db_path: Path to SQLite database file
            wal_mode: Enable WAL mode for concurrent readers
            create_if_missing: Create database and schema if missing
        """
        self.db_path = Path(db_path)

        if create_if_missing:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=False,
            pool_pre_ping=True,
        )
        self.Session = sessionmaker(bind=self.engine)

        if create_if_missing:
            Base.metadata.create_all(self.engine)

        if wal_mode:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.commit()

        logger.debug("Preference database ready: %s", self.db_path)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Get a database session context manager.

        Commits on success, rolls back on any error.
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_raw(self, namespace: str, key: str) -> str | None:
        """Get the stored representation of a value, or None if absent."""
        with self.session() as session:
            row = session.query(Preference).filter(
                Preference.namespace == namespace,
                Preference.key == key,
            ).first()
            return row.value if row is not None else None

    def get_string_set(self, namespace: str, key: str) -> set[str] | None:
        """
        Read a string set.

        Args:
            namespace: Preference namespace
            key: Key within the namespace

        Returns:
            The stored set, or None if the key was never written
        """
        raw = self.get_raw(namespace, key)
        if raw is None:
            return None
        return decode_string_set(raw)

    def get_string_sets(
        self,
        namespace: str,
        keys: Iterable[str],
    ) -> dict[str, set[str] | None]:
        """Read several string sets from one consistent snapshot."""
        keys = list(keys)
        with self.session() as session:
            rows = session.query(Preference).filter(
                Preference.namespace == namespace,
                Preference.key.in_(keys),
            ).all()
            found = {row.key: row.value for row in rows}

        return {
            key: decode_string_set(found[key]) if key in found else None
            for key in keys
        }

    def put_string_sets(
        self,
        namespace: str,
        values: Mapping[str, Iterable[str]],
    ) -> None:
        """
        Write several string sets atomically.

        Args:
            namespace: Preference namespace
            values: Mapping of key to set members

        Raises:
            sqlalchemy.exc.SQLAlchemyError: If the transaction fails
        """
        with self.session() as session:
            for key, members in values.items():
                encoded = encode_string_set(members)
                row = session.query(Preference).filter(
                    Preference.namespace == namespace,
                    Preference.key == key,
                ).first()
                if row is None:
                    session.add(Preference(namespace=namespace, key=key, value=encoded))
                elif row.value != encoded:
                    row.value = encoded

        logger.debug("Wrote %d preference keys in %s", len(values), namespace)

    def delete_namespace(self, namespace: str) -> int:
        """Delete every key in a namespace. Returns number of rows removed."""
        with self.session() as session:
            count = session.query(Preference).filter(
                Preference.namespace == namespace
            ).delete()
        logger.info("Cleared %d preference keys in %s", count, namespace)
        return count

    def close(self) -> None:
        """Dispose of the connection pool."""
        self.engine.dispose()
