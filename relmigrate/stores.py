"""
Relational store handles: connection lifecycle, introspection, paged reads,
and idempotent bulk inserts for SQLite, PostgreSQL and MySQL.
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

import mysql.connector
import psycopg2
from mysql.connector import Error as MySQLError
from psycopg2.extras import Json, execute_values

from relmigrate.catalog import FieldKind, Row, TableDescriptor, build_table_descriptors


# ═════════════════════════════════════════════════════════════
# Errors
# ═════════════════════════════════════════════════════════════

class StoreError(RuntimeError):
    """Any failure talking to a relational store."""

    # Partial TableReport of the table being moved, when raised mid-transfer
    report = None


class StoreConnectionError(StoreError):
    """The connection could not be opened or was lost."""


class DestinationUnreachable(StoreConnectionError):
    pass


class StoreWriteError(StoreError):
    """A bulk insert was rejected by the store."""

    def __init__(self, table: str, message: str, first_key=None, last_key=None):
        self.table = table
        self.first_key = first_key
        self.last_key = last_key
        super().__init__(f"Insert into {table} failed: {message}")


# ═════════════════════════════════════════════════════════════
# Value helpers
# ═════════════════════════════════════════════════════════════

def epoch_to_datetime(value) -> datetime:
    """Integer timestamps (as SQLite-backed ORMs store them) to UTC datetimes.

    Values above 1e11 are taken as milliseconds.
    """
    seconds = value / 1000 if abs(value) > 1e11 else value
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _is_plain_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ═════════════════════════════════════════════════════════════
# Base store
# ═════════════════════════════════════════════════════════════

class RelationalStore(ABC):
    """One open connection to a relational database.

    Used as a context manager: the connection is opened on enter and
    released on exit, whatever the outcome.
    """

    engine = ""
    placeholder = "%s"
    quote_char = '"'
    driver_error: type = Exception

    def __init__(self, config):
        self.config = config
        self.conn = None
        self._tables: Optional[list[str]] = None
        self._column_types: dict[str, dict[str, str]] = {}

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self):
        return f"<{type(self).__name__} {self.describe()}>"

    # ── Connection ────────────────────────────────────────────

    @abstractmethod
    def connect(self):
        ...

    def close(self):
        if self.conn is None:
            return
        try:
            self.conn.close()
        except self.driver_error:
            pass
        self.conn = None

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    def describe(self) -> str:
        """Connection string for display, password masked."""

    def ping(self) -> bool:
        try:
            self._fetch("SELECT 1 AS ok")
            return True
        except StoreError:
            return False

    # ── Introspection ─────────────────────────────────────────

    @abstractmethod
    def list_tables(self) -> list[str]:
        ...

    @abstractmethod
    def _load_column_types(self, table: str) -> dict[str, str]:
        ...

    @abstractmethod
    def describe_tables(self) -> list[TableDescriptor]:
        ...

    def has_table(self, name: str) -> bool:
        if self._tables is None:
            self._tables = self.list_tables()
        return name in self._tables

    def column_types(self, table: str) -> dict[str, str]:
        if table not in self._column_types:
            self._column_types[table] = self._load_column_types(table)
        return self._column_types[table]

    def table_columns(self, table: str) -> list[str]:
        return list(self.column_types(table))

    def quote(self, name: str) -> str:
        q = self.quote_char
        return q + name.replace(q, q + q) + q

    def qualify(self, table: str) -> str:
        return self.quote(table)

    # ── Reads ─────────────────────────────────────────────────

    def _fetch(self, sql: str, params=()) -> list[Row]:
        if self.conn is None:
            raise StoreConnectionError(f"{self.engine} store is not connected")
        cursor = None
        try:
            cursor = self.conn.cursor()
            if params:
                cursor.execute(sql, params)
            else:
                cursor.execute(sql)
            names = [d[0] for d in cursor.description]
            return [dict(zip(names, row)) for row in cursor.fetchall()]
        except self.driver_error as e:
            raise self._wrap_error(e)
        finally:
            if cursor is not None:
                try:
                    cursor.close()
                except self.driver_error:
                    pass

    def _wrap_error(self, e: Exception) -> StoreError:
        if not self.is_connected():
            return StoreConnectionError(f"Lost connection to {self.engine}: {e}")
        return StoreError(f"{self.engine} query failed: {e}")

    def _select_list(self, table: TableDescriptor) -> str:
        return ", ".join(self.quote(c) for c in table.columns)

    def count(self, table: TableDescriptor) -> int:
        rows = self._fetch(f"SELECT COUNT(*) AS n FROM {self.qualify(table.name)}")
        return int(rows[0]["n"])

    def find_page(self, table: TableDescriptor, page_size: int, cursor=None) -> list[Row]:
        """Up to ``page_size`` rows with primary key greater than ``cursor``, ascending."""
        pk = self.quote(table.primary_key)
        sql = f"SELECT {self._select_list(table)} FROM {self.qualify(table.name)}"
        params: tuple = ()
        if cursor is not None:
            sql += f" WHERE {pk} > {self.placeholder}"
            params = (cursor,)
        sql += f" ORDER BY {pk} LIMIT {self.placeholder}"
        return self._fetch(sql, params + (page_size,))

    def find_all(self, table: TableDescriptor) -> list[Row]:
        pk = self.quote(table.primary_key)
        return self._fetch(
            f"SELECT {self._select_list(table)} FROM {self.qualify(table.name)} ORDER BY {pk}"
        )

    # ── Writes ────────────────────────────────────────────────

    def prepare_value(self, data_type: str, value):
        """Convert a source value into something this driver and column accept."""
        return value

    def _row_values(self, table: TableDescriptor, rows: list[Row]) -> list[tuple]:
        types = self.column_types(table.name)
        return [
            tuple(self.prepare_value(types.get(c, ""), row.get(c)) for c in table.columns)
            for row in rows
        ]

    @abstractmethod
    def bulk_insert(self, table: TableDescriptor, rows: list[Row], skip_existing: bool = True) -> int:
        """Insert ``rows``; returns how many were actually inserted.

        With ``skip_existing`` rows whose primary key is already present are
        left alone instead of raising.
        """

    def reset_sequences(self, table: TableDescriptor):
        """Advance auto-increment state past the migrated keys, where the engine needs it."""
        return None


# ═════════════════════════════════════════════════════════════
# SQLite
# ═════════════════════════════════════════════════════════════

class SQLiteStore(RelationalStore):
    engine = "sqlite"
    placeholder = "?"
    driver_error = sqlite3.Error

    def connect(self):
        path = self.config.path
        try:
            if path == ":memory:":
                self.conn = sqlite3.connect(path)
            else:
                if not Path(path).exists():
                    raise StoreConnectionError(f"SQLite database not found: {path}")
                uri = Path(path).resolve().as_uri() + "?mode=rw"
                self.conn = sqlite3.connect(uri, uri=True)
            self.conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            raise StoreConnectionError(f"Cannot open SQLite database {path}: {e}") from e
        return self

    def is_connected(self) -> bool:
        if self.conn is None:
            return False
        try:
            self.conn.execute("SELECT 1")
            return True
        except sqlite3.ProgrammingError:
            return False

    def describe(self) -> str:
        return f"sqlite:///{self.config.path}"

    def list_tables(self) -> list[str]:
        rows = self._fetch(
            "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY rowid"
        )
        return [r["name"] for r in rows]

    def _table_info(self, table: str) -> list[Row]:
        return self._fetch(f"PRAGMA table_info({self.quote(table)})")

    def _load_column_types(self, table: str) -> dict[str, str]:
        return {r["name"]: (r["type"] or "").upper() for r in self._table_info(table)}

    def describe_tables(self) -> list[TableDescriptor]:
        names = self.list_tables()
        columns, foreign_keys, primary_keys = [], [], {}
        for name in names:
            info = self._table_info(name)
            for r in info:
                declared = (r["type"] or "").upper()
                columns.append({
                    "table": name,
                    "column": r["name"],
                    "data_type": declared,
                    "kind": FieldKind.UNSUPPORTED if "BLOB" in declared else FieldKind.SCALAR,
                })
            pk_cols = sorted((r for r in info if r["pk"]), key=lambda r: r["pk"])
            primary_keys[name] = [r["name"] for r in pk_cols]

            grouped: dict[int, list[Row]] = {}
            for fk in self._fetch(f"PRAGMA foreign_key_list({self.quote(name)})"):
                grouped.setdefault(fk["id"], []).append(fk)
            for fk_id, parts in sorted(grouped.items()):
                parts.sort(key=lambda p: p["seq"])
                foreign_keys.append({
                    "table": name,
                    "name": None,
                    "columns": [p["from"] for p in parts],
                    "ref_table": parts[0]["table"],
                })
        return build_table_descriptors(names, columns, foreign_keys, primary_keys)

    def prepare_value(self, data_type: str, value):
        if isinstance(value, datetime):
            return value.isoformat(sep=" ")
        if isinstance(value, (date, time)):
            return value.isoformat()
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value

    def bulk_insert(self, table: TableDescriptor, rows: list[Row], skip_existing: bool = True) -> int:
        if not rows:
            return 0
        cols = ", ".join(self.quote(c) for c in table.columns)
        marks = ", ".join("?" for _ in table.columns)
        sql = f"INSERT INTO {self.qualify(table.name)} ({cols}) VALUES ({marks})"
        if skip_existing:
            sql += f" ON CONFLICT({self.quote(table.primary_key)}) DO NOTHING"
        try:
            cursor = self.conn.cursor()
            cursor.executemany(sql, self._row_values(table, rows))
            inserted = cursor.rowcount
            self.conn.commit()
            return inserted
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreWriteError(table.name, str(e), rows[0].get(table.primary_key), rows[-1].get(table.primary_key))


# ═════════════════════════════════════════════════════════════
# PostgreSQL
# ═════════════════════════════════════════════════════════════

PG_UNSUPPORTED_TYPES = {"bytea", "tsvector", "tsquery", "oid"}
PG_TIMESTAMP_TYPES = {"timestamp without time zone", "timestamp with time zone"}


class PostgresStore(RelationalStore):
    engine = "postgresql"
    driver_error = psycopg2.Error

    @property
    def schema(self) -> str:
        return getattr(self.config, "schema", None) or "public"

    def connect(self):
        try:
            self.conn = psycopg2.connect(
                host=self.config.host,
                port=self.config.port,
                user=self.config.user,
                password=self.config.password,
                dbname=self.config.database,
                connect_timeout=10,
            )
            # One statement per chunk, so each chunk commits atomically on its own
            self.conn.autocommit = True
        except psycopg2.Error as e:
            raise StoreConnectionError(f"Cannot connect to PostgreSQL: {e}") from e
        return self

    def is_connected(self) -> bool:
        return self.conn is not None and not self.conn.closed

    def describe(self) -> str:
        c = self.config
        return f"postgresql://{c.user}:****@{c.host}:{c.port}/{c.database}"

    def qualify(self, table: str) -> str:
        return f"{self.quote(self.schema)}.{self.quote(table)}"

    def list_tables(self) -> list[str]:
        rows = self._fetch(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = %s AND table_type = 'BASE TABLE' "
            "ORDER BY table_name",
            (self.schema,),
        )
        return [r["table_name"] for r in rows]

    def _load_column_types(self, table: str) -> dict[str, str]:
        rows = self._fetch(
            "SELECT column_name, data_type FROM information_schema.columns "
            "WHERE table_schema = %s AND table_name = %s ORDER BY ordinal_position",
            (self.schema, table),
        )
        return {r["column_name"]: r["data_type"] for r in rows}

    def describe_tables(self) -> list[TableDescriptor]:
        names = self.list_tables()
        enum_types = {
            r["typname"] for r in self._fetch("SELECT typname FROM pg_type WHERE typtype = 'e'")
        }

        columns = []
        for r in self._fetch("""
            SELECT table_name, column_name, data_type, udt_name
            FROM information_schema.columns
            WHERE table_schema = %s
            ORDER BY table_name, ordinal_position
        """, (self.schema,)):
            data_type = r["data_type"]
            if data_type == "USER-DEFINED" and r["udt_name"] in enum_types:
                kind = FieldKind.ENUM
            elif data_type == "USER-DEFINED" or data_type in PG_UNSUPPORTED_TYPES:
                kind = FieldKind.UNSUPPORTED
            else:
                kind = FieldKind.SCALAR
            columns.append({
                "table": r["table_name"],
                "column": r["column_name"],
                "data_type": data_type,
                "kind": kind,
            })

        foreign_keys = [
            {"table": r["tbl"], "name": r["conname"], "columns": list(r["cols"]), "ref_table": r["ref"]}
            for r in self._fetch("""
                SELECT con.conname, rel.relname AS tbl, ref.relname AS ref,
                       array_agg(att.attname::text ORDER BY k.ord) AS cols
                FROM pg_constraint con
                JOIN pg_class rel ON rel.oid = con.conrelid
                JOIN pg_namespace ns ON ns.oid = rel.relnamespace
                JOIN pg_class ref ON ref.oid = con.confrelid
                CROSS JOIN LATERAL unnest(con.conkey) WITH ORDINALITY AS k(attnum, ord)
                JOIN pg_attribute att ON att.attrelid = con.conrelid AND att.attnum = k.attnum
                WHERE con.contype = 'f' AND ns.nspname = %s
                GROUP BY con.conname, rel.relname, ref.relname
                ORDER BY rel.relname, con.conname
            """, (self.schema,))
        ]

        primary_keys: dict[str, list[str]] = {}
        for r in self._fetch("""
            SELECT tc.table_name, kcu.column_name
            FROM information_schema.table_constraints tc
            JOIN information_schema.key_column_usage kcu
              ON tc.constraint_name = kcu.constraint_name
              AND tc.table_schema = kcu.table_schema
            WHERE tc.constraint_type = 'PRIMARY KEY'
              AND tc.table_schema = %s
            ORDER BY tc.table_name, kcu.ordinal_position
        """, (self.schema,)):
            primary_keys.setdefault(r["table_name"], []).append(r["column_name"])

        return build_table_descriptors(names, columns, foreign_keys, primary_keys)

    def prepare_value(self, data_type: str, value):
        if value is None:
            return None
        if data_type == "boolean" and _is_plain_number(value):
            return bool(value)
        if data_type in PG_TIMESTAMP_TYPES and _is_plain_number(value):
            dt = epoch_to_datetime(value)
            return dt if data_type.endswith("with time zone") else dt.replace(tzinfo=None)
        if data_type == "date" and _is_plain_number(value):
            return epoch_to_datetime(value).date()
        if data_type in ("json", "jsonb") and isinstance(value, (dict, list)):
            return Json(value)
        return value

    def bulk_insert(self, table: TableDescriptor, rows: list[Row], skip_existing: bool = True) -> int:
        if not rows:
            return 0
        cols = ", ".join(self.quote(c) for c in table.columns)
        sql = f"INSERT INTO {self.qualify(table.name)} ({cols}) VALUES %s"
        if skip_existing:
            sql += f" ON CONFLICT ({self.quote(table.primary_key)}) DO NOTHING"
        values = self._row_values(table, rows)
        try:
            with self.conn.cursor() as cursor:
                execute_values(cursor, sql, values, page_size=len(values))
                return cursor.rowcount
        except psycopg2.Error as e:
            if not self.is_connected():
                raise StoreConnectionError(f"Lost connection to PostgreSQL: {e}")
            raise StoreWriteError(table.name, str(e).strip(), rows[0].get(table.primary_key), rows[-1].get(table.primary_key))

    def reset_sequences(self, table: TableDescriptor):
        """Move a serial/identity sequence past the highest migrated key."""
        if not table.primary_key:
            return None
        qualified = self.qualify(table.name)
        rows = self._fetch(
            "SELECT pg_get_serial_sequence(%s, %s) AS seq",
            (qualified, table.primary_key),
        )
        sequence = rows[0]["seq"] if rows else None
        if not sequence:
            return None
        pk = self.quote(table.primary_key)
        self._fetch(
            f"SELECT setval(%s, COALESCE(MAX({pk}), 1), MAX({pk}) IS NOT NULL) AS value FROM {qualified}",
            (sequence,),
        )
        return sequence


# ═════════════════════════════════════════════════════════════
# MySQL
# ═════════════════════════════════════════════════════════════

MYSQL_UNSUPPORTED_TYPES = {
    "binary", "varbinary", "tinyblob", "blob", "mediumblob", "longblob",
    "geometry", "point", "linestring", "polygon",
    "multipoint", "multilinestring", "multipolygon", "geometrycollection",
}
MYSQL_TIMESTAMP_TYPES = {"datetime", "timestamp"}


class MySQLStore(RelationalStore):
    engine = "mysql"
    quote_char = "`"
    driver_error = MySQLError

    def connect(self):
        try:
            self.conn = mysql.connector.connect(
                host=self.config.host,
                port=self.config.port,
                user=self.config.user,
                password=self.config.password,
                database=self.config.database,
                connect_timeout=10,
                autocommit=True,
            )
        except MySQLError as e:
            raise StoreConnectionError(f"Cannot connect to MySQL: {e}") from e
        return self

    def is_connected(self) -> bool:
        if self.conn is None:
            return False
        try:
            return self.conn.is_connected()
        except MySQLError:
            return False

    def describe(self) -> str:
        c = self.config
        return f"mysql://{c.user}:****@{c.host}:{c.port}/{c.database}"

    def list_tables(self) -> list[str]:
        rows = self._fetch(
            "SELECT table_name AS name FROM information_schema.tables "
            "WHERE table_schema = %s AND table_type = 'BASE TABLE' "
            "ORDER BY table_name",
            (self.config.database,),
        )
        return [r["name"] for r in rows]

    def _load_column_types(self, table: str) -> dict[str, str]:
        rows = self._fetch(
            "SELECT column_name AS name, data_type AS type FROM information_schema.columns "
            "WHERE table_schema = %s AND table_name = %s ORDER BY ordinal_position",
            (self.config.database, table),
        )
        return {r["name"]: r["type"].lower() for r in rows}

    def describe_tables(self) -> list[TableDescriptor]:
        db = self.config.database
        names = self.list_tables()

        columns = []
        for r in self._fetch("""
            SELECT table_name AS tbl, column_name AS col, data_type AS type
            FROM information_schema.columns
            WHERE table_schema = %s
            ORDER BY table_name, ordinal_position
        """, (db,)):
            data_type = r["type"].lower()
            if data_type == "enum":
                kind = FieldKind.ENUM
            elif data_type in MYSQL_UNSUPPORTED_TYPES:
                kind = FieldKind.UNSUPPORTED
            else:
                kind = FieldKind.SCALAR
            columns.append({"table": r["tbl"], "column": r["col"], "data_type": data_type, "kind": kind})

        grouped: dict[tuple[str, str], dict] = {}
        primary_keys: dict[str, list[str]] = {}
        for r in self._fetch("""
            SELECT table_name AS tbl, constraint_name AS name, column_name AS col,
                   referenced_table_name AS ref
            FROM information_schema.key_column_usage
            WHERE table_schema = %s
              AND (referenced_table_name IS NOT NULL OR constraint_name = 'PRIMARY')
            ORDER BY table_name, constraint_name, ordinal_position
        """, (db,)):
            if r["name"] == "PRIMARY":
                primary_keys.setdefault(r["tbl"], []).append(r["col"])
                continue
            fk = grouped.setdefault(
                (r["tbl"], r["name"]),
                {"table": r["tbl"], "name": r["name"], "columns": [], "ref_table": r["ref"]},
            )
            fk["columns"].append(r["col"])

        return build_table_descriptors(names, columns, list(grouped.values()), primary_keys)

    def prepare_value(self, data_type: str, value):
        if value is None:
            return None
        if data_type in MYSQL_TIMESTAMP_TYPES and _is_plain_number(value):
            return epoch_to_datetime(value).replace(tzinfo=None)
        if isinstance(value, datetime) and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value

    def _existing_keys(self, cursor, table: TableDescriptor, keys: list) -> set:
        pk = self.quote(table.primary_key)
        marks = ", ".join("%s" for _ in keys)
        cursor.execute(f"SELECT {pk} FROM {self.qualify(table.name)} WHERE {pk} IN ({marks})", tuple(keys))
        return {r[0] for r in cursor.fetchall()}

    def bulk_insert(self, table: TableDescriptor, rows: list[Row], skip_existing: bool = True) -> int:
        """Plain INSERT of the rows whose key is not present yet.

        Existing keys are looked up first, so a conflict on any other unique
        index still fails the chunk instead of being mistaken for a skip.
        """
        if not rows:
            return 0
        pk_col = table.primary_key
        first_key, last_key = rows[0].get(pk_col), rows[-1].get(pk_col)
        cols = ", ".join(self.quote(c) for c in table.columns)
        marks = ", ".join("%s" for _ in table.columns)
        sql = f"INSERT INTO {self.qualify(table.name)} ({cols}) VALUES ({marks})"
        cursor = None
        try:
            cursor = self.conn.cursor()
            if skip_existing:
                present = self._existing_keys(cursor, table, [r.get(pk_col) for r in rows])
                rows = [r for r in rows if r.get(pk_col) not in present]
                if not rows:
                    return 0
            cursor.executemany(sql, self._row_values(table, rows))
            return cursor.rowcount
        except MySQLError as e:
            if not self.is_connected():
                raise StoreConnectionError(f"Lost connection to MySQL: {e}") from e
            raise StoreWriteError(table.name, str(e), first_key, last_key)
        finally:
            if cursor is not None:
                try:
                    cursor.close()
                except MySQLError:
                    pass


# ═════════════════════════════════════════════════════════════
# Factory
# ═════════════════════════════════════════════════════════════

STORE_CLASSES = {
    "sqlite": SQLiteStore,
    "postgresql": PostgresStore,
    "mysql": MySQLStore,
}


def open_store(config) -> RelationalStore:
    """Build (not yet connected) store for a StoreConfig; use it with ``with``."""
    try:
        cls = STORE_CLASSES[config.engine]
    except KeyError:
        raise StoreError(f"Unsupported engine: {config.engine}")
    return cls(config)
