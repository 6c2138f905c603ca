"""
Shared fixtures: an in-memory store and small schema builders.
"""

import os
import sys
import sqlite3

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from relmigrate.catalog import FieldDescriptor, FieldKind, TableDescriptor
from relmigrate.config import StoreConfig
from relmigrate.stores import StoreConnectionError, StoreError, StoreWriteError


def scalar(name: str) -> FieldDescriptor:
    return FieldDescriptor(name=name, kind=FieldKind.SCALAR)


def relation(name: str, related_table: str, *fk_columns: str) -> FieldDescriptor:
    return FieldDescriptor(name=name, kind=FieldKind.RELATION, related_table=related_table, fk_columns=fk_columns)


def make_table(name: str, columns=("id",), relations=(), primary_key="id") -> TableDescriptor:
    fields = tuple(scalar(c) for c in columns) + tuple(relations)
    return TableDescriptor(name=name, fields=fields, primary_key=primary_key)


class FakeStore:
    """Dict-backed store that records every call made against it.

    With ``enforce_fks`` an insert whose single-column foreign key points
    at a missing parent is rejected, and the whole chunk is discarded.
    """

    engine = "fake"

    def __init__(self, schema: dict, rows: dict = None, primary_keys: dict = None,
                 reachable: bool = True, enforce_fks: bool = False):
        self.schema = {name: list(cols) for name, cols in schema.items()}
        self.primary_keys = dict(primary_keys or {})
        self.rows = {name: [] for name in self.schema}
        for name, table_rows in (rows or {}).items():
            self.rows[name] = [dict(r) for r in table_rows]
        self.reachable = reachable
        self.enforce_fks = enforce_fks
        self.page_calls = []
        self.find_all_calls = []
        self.insert_calls = []
        self.sequence_resets = []
        self.fail_inserts = {}
        self.disconnect_on = set()
        # table -> number of pages served before reads start failing
        self.read_errors = {}

    @classmethod
    def for_tables(cls, tables, rows=None, **kwargs):
        return cls(
            {t.name: t.columns for t in tables},
            rows,
            primary_keys={t.name: t.primary_key for t in tables},
            **kwargs,
        )

    def describe(self) -> str:
        return "fake://store"

    def ping(self) -> bool:
        return self.reachable

    def has_table(self, name: str) -> bool:
        return name in self.schema

    def table_columns(self, name: str) -> list:
        return list(self.schema[name])

    def count(self, table: TableDescriptor) -> int:
        return len(self.rows[table.name])

    def _project(self, table, rows):
        return [{c: r.get(c) for c in table.columns} for r in rows]

    def find_page(self, table: TableDescriptor, page_size: int, cursor=None):
        self.page_calls.append((table.name, page_size, cursor))
        served = sum(1 for call in self.page_calls if call[0] == table.name) - 1
        if table.name in self.read_errors and served >= self.read_errors[table.name]:
            raise StoreError(f"fake query failed: cannot read {table.name}")
        pk = table.primary_key
        ordered = sorted(self.rows[table.name], key=lambda r: r[pk])
        after = [r for r in ordered if cursor is None or r[pk] > cursor]
        return self._project(table, after[:page_size])

    def find_all(self, table: TableDescriptor):
        self.find_all_calls.append(table.name)
        pk = table.primary_key
        return self._project(table, sorted(self.rows[table.name], key=lambda r: r[pk]))

    def _keys(self, name: str) -> set:
        pk = self.primary_keys.get(name, "id")
        return {r[pk] for r in self.rows.get(name, [])}

    def bulk_insert(self, table: TableDescriptor, rows, skip_existing: bool = True) -> int:
        pk = table.primary_key
        self.insert_calls.append((table.name, [r[pk] for r in rows]))
        if table.name in self.disconnect_on:
            raise StoreConnectionError("Lost connection to fake: server closed the connection")
        if table.name in self.fail_inserts:
            raise StoreWriteError(table.name, self.fail_inserts[table.name], rows[0][pk], rows[-1][pk])

        existing = self._keys(table.name)
        staged = []
        for row in rows:
            if row[pk] in existing:
                if not skip_existing:
                    raise StoreWriteError(table.name, f"duplicate key {row[pk]!r}", rows[0][pk], rows[-1][pk])
                continue
            if self.enforce_fks:
                self._check_foreign_keys(table, row, staged)
            staged.append(dict(row))
            existing.add(row[pk])

        self.rows[table.name].extend(staged)
        return len(staged)

    def _check_foreign_keys(self, table, row, staged):
        for f in table.relations:
            if not f.stores_foreign_key or len(f.fk_columns) != 1:
                continue
            value = row.get(f.fk_columns[0])
            if value is None:
                continue
            parents = self._keys(f.related_table)
            if f.related_table == table.name:
                parents |= {r[table.primary_key] for r in staged}
            if value not in parents:
                raise StoreWriteError(
                    table.name,
                    f"foreign key {f.fk_columns[0]}={value!r} has no parent in {f.related_table}",
                    row[table.primary_key], row[table.primary_key],
                )

    def reset_sequences(self, table: TableDescriptor):
        self.sequence_resets.append(table.name)


class ToggleEvent:
    """Cancellation flag that turns itself on after ``after`` checks."""

    def __init__(self, after: int):
        self.after = after
        self.checks = 0

    def is_set(self) -> bool:
        self.checks += 1
        return self.checks > self.after


@pytest.fixture
def sqlite_file(tmp_path):
    """Factory: build a SQLite database file from a DDL script."""
    def build(name: str, script: str) -> str:
        path = tmp_path / name
        conn = sqlite3.connect(path)
        conn.executescript(script)
        conn.commit()
        conn.close()
        return str(path)
    return build


@pytest.fixture
def sqlite_config():
    def build(path: str) -> StoreConfig:
        return StoreConfig(engine="sqlite", path=path)
    return build
