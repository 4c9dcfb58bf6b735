"""
Migration endpoint adapter.

An Endpoint is one side of the migration (source or target). It exposes the
catalog reads and the handful of writes the pipeline needs, so pipeline
components never build SQL themselves and tests can swap in an in-memory
implementation.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sqlalchemy import Engine, text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from .base import create_endpoint_engine, get_libpq_url, mask_url

logger = logging.getLogger(__name__)


@dataclass
class ProbeOutcome:
    """Result of a rolled-back insert against one table."""

    table: str
    succeeded: bool
    sqlstate: Optional[str] = None
    message: Optional[str] = None


def split_qualified(name: str, default_schema: str = "public") -> Tuple[str, str]:
    """Split "schema.name" into its parts; unqualified names get the default schema."""
    if "." in name:
        schema, _, relname = name.partition(".")
        return schema, relname
    return default_schema, name


class Endpoint(ABC):
    """Abstract base class for a migration endpoint."""

    def __init__(self, label: str, url: str):
        self.label = label
        self.url = url

    @property
    def display_url(self) -> str:
        """URL with the password masked."""
        return mask_url(self.url)

    @property
    def libpq_url(self) -> str:
        """URL for pg_dump/psql."""
        return get_libpq_url(self.url)

    @abstractmethod
    def ping(self) -> bool:
        """Return True if a trivial query succeeds."""
        pass

    @abstractmethod
    def server_version_num(self) -> int:
        """Return server_version_num (e.g. 150004)."""
        pass

    @abstractmethod
    def list_tables(self, schema: str) -> List[str]:
        """Return table names of a schema, sorted."""
        pass

    @abstractmethod
    def count_rows(self, schema: str, table: str) -> int:
        """Return the exact row count of a table."""
        pass

    @abstractmethod
    def list_sequences(self, schema: str) -> Dict[str, Optional[int]]:
        """Return sequence name -> last issued value (None if never issued)."""
        pass

    @abstractmethod
    def list_extensions(self) -> List[str]:
        """Return installed extension names, sorted, excluding plpgsql."""
        pass

    @abstractmethod
    def sequence_owners(self, schema: str) -> Dict[str, List[str]]:
        """Return table name -> names of sequences owned by its columns."""
        pass

    @abstractmethod
    def set_read_only(self, read_only: bool) -> None:
        """Set the database default for new sessions to read-only or read-write."""
        pass

    @abstractmethod
    def is_read_only(self) -> bool:
        """Return True if new sessions on this database default to read-only."""
        pass

    @abstractmethod
    def set_sequence(self, schema: str, sequence: str, value: int) -> None:
        """Mark ``value`` as already issued, so nextval returns a greater value."""
        pass

    @abstractmethod
    def enable_all_triggers(self, schema: str, tables: List[str]) -> int:
        """Re-enable every trigger (including FK triggers) on the given tables."""
        pass

    @abstractmethod
    def probe_insert(self, schema: str, table: str) -> ProbeOutcome:
        """Insert a default row inside a transaction and roll it back.

        Sequence state consumed by the insert is restored afterwards.
        """
        pass

    def dispose(self) -> None:
        """Release pooled connections."""
        pass


class PostgresEndpoint(Endpoint):
    """Endpoint backed by a SQLAlchemy engine (psycopg driver)."""

    def __init__(self, label: str, url: str, engine: Optional[Engine] = None):
        super().__init__(label, url)
        self._engine = engine

    @property
    def engine(self) -> Engine:
        """Create the engine lazily so unreachable endpoints fail at first use."""
        if self._engine is None:
            self._engine = create_endpoint_engine(self.url)
        return self._engine

    def _quote(self, identifier: str) -> str:
        return self.engine.dialect.identifier_preparer.quote(identifier)

    def _qualified(self, schema: str, name: str) -> str:
        return f"{self._quote(schema)}.{self._quote(name)}"

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            reason = e.orig if isinstance(e, DBAPIError) else e
            logger.warning(f"{self.label} unreachable ({self.display_url}): {reason}")
            return False

    def server_version_num(self) -> int:
        with self.engine.connect() as conn:
            return int(conn.execute(text("SHOW server_version_num")).scalar_one())

    def _database_name(self) -> str:
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT current_database()")).scalar_one()

    def list_tables(self, schema: str) -> List[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    "SELECT tablename FROM pg_tables "
                    "WHERE schemaname = :schema ORDER BY tablename"
                ),
                {"schema": schema},
            )
            return [row[0] for row in rows]

    def count_rows(self, schema: str, table: str) -> int:
        with self.engine.connect() as conn:
            return int(
                conn.execute(
                    text(f"SELECT count(*) FROM {self._qualified(schema, table)}")
                ).scalar_one()
            )

    def list_sequences(self, schema: str) -> Dict[str, Optional[int]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    "SELECT sequencename, last_value FROM pg_sequences "
                    "WHERE schemaname = :schema ORDER BY sequencename"
                ),
                {"schema": schema},
            )
            return {row[0]: (int(row[1]) if row[1] is not None else None) for row in rows}

    def list_extensions(self) -> List[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    "SELECT extname FROM pg_extension "
                    "WHERE extname <> 'plpgsql' ORDER BY extname"
                )
            )
            return [row[0] for row in rows]

    def sequence_owners(self, schema: str) -> Dict[str, List[str]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT t.relname AS table_name, s.relname AS sequence_name
                    FROM pg_class s
                    JOIN pg_depend d
                      ON d.objid = s.oid
                     AND d.classid = 'pg_class'::regclass
                     AND d.refclassid = 'pg_class'::regclass
                    JOIN pg_class t ON t.oid = d.refobjid
                    JOIN pg_namespace n ON n.oid = t.relnamespace
                    WHERE s.relkind = 'S'
                      AND d.deptype IN ('a', 'i')
                      AND n.nspname = :schema
                    ORDER BY t.relname, s.relname
                    """
                ),
                {"schema": schema},
            )
            owners: Dict[str, List[str]] = {}
            for table_name, sequence_name in rows:
                owners.setdefault(table_name, []).append(sequence_name)
            return owners

    def set_read_only(self, read_only: bool) -> None:
        database = self._database_name()
        value = "on" if read_only else "off"
        with self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            # A frozen database opens read-only sessions; lift it for this session only
            conn.execute(text("SET default_transaction_read_only = off"))
            conn.execute(
                text(
                    f"ALTER DATABASE {self._quote(database)} "
                    f"SET default_transaction_read_only = {value}"
                )
            )
        # Pooled sessions keep the old default; new ones pick up the change
        self.engine.dispose()

    def is_read_only(self) -> bool:
        self.engine.dispose()
        with self.engine.connect() as conn:
            value = conn.execute(text("SHOW default_transaction_read_only")).scalar_one()
        return value == "on"

    def set_sequence(self, schema: str, sequence: str, value: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text("SELECT setval(CAST(:name AS regclass), :value, true)"),
                {"name": self._qualified(schema, sequence), "value": value},
            )

    def enable_all_triggers(self, schema: str, tables: List[str]) -> int:
        with self.engine.begin() as conn:
            for table in tables:
                conn.execute(
                    text(f"ALTER TABLE {self._qualified(schema, table)} ENABLE TRIGGER ALL")
                )
        return len(tables)

    def probe_insert(self, schema: str, table: str) -> ProbeOutcome:
        sequences = self.sequence_owners(schema).get(table, [])
        saved: Dict[str, Tuple[int, bool]] = {}
        with self.engine.connect() as conn:
            for sequence in sequences:
                row = conn.execute(
                    text(
                        f"SELECT last_value, is_called FROM {self._qualified(schema, sequence)}"
                    )
                ).one()
                saved[sequence] = (int(row[0]), bool(row[1]))
            conn.rollback()

            trans = conn.begin()
            try:
                conn.execute(
                    text(f"INSERT INTO {self._qualified(schema, table)} DEFAULT VALUES")
                )
                outcome = ProbeOutcome(table=table, succeeded=True)
            except DBAPIError as e:
                outcome = ProbeOutcome(
                    table=table,
                    succeeded=False,
                    sqlstate=getattr(e.orig, "sqlstate", None),
                    message=str(e.orig).strip(),
                )
            finally:
                trans.rollback()

            # nextval is not transactional; put the cursors back where they were
            with conn.begin():
                for sequence, (last_value, is_called) in saved.items():
                    conn.execute(
                        text("SELECT setval(CAST(:name AS regclass), :value, :called)"),
                        {
                            "name": self._qualified(schema, sequence),
                            "value": last_value,
                            "called": is_called,
                        },
                    )
        return outcome

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
