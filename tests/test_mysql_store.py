"""
MySQL bulk inserts against a scripted connection: skip-existing lookups,
conflicts on other unique indexes, and dropped connections.
"""

import pytest
from mysql.connector.errors import IntegrityError, OperationalError

from conftest import FakeStore, make_table

from relmigrate.config import StoreConfig
from relmigrate.orchestrator import run_migration
from relmigrate.stores import MySQLStore, StoreConnectionError, StoreWriteError
from relmigrate.transfer import FAILED

USER = make_table("User", ("id", "email"))


class ScriptedCursor:
    def __init__(self, conn):
        self.conn = conn
        self.description = None
        self.rowcount = -1
        self._rows = []

    def execute(self, sql, params=()):
        self.conn.statements.append(sql)
        if sql.startswith("SELECT 1"):
            self.description = [("ok",)]
            self._rows = [(1,)]
        elif " IN (" in sql:
            self.description = [("id",)]
            self._rows = [(k,) for k in params if k in self.conn.ids]

    def executemany(self, sql, seq):
        self.conn.statements.append(sql)
        ids, emails = set(self.conn.ids), set(self.conn.emails)
        for row_id, email in seq:
            if row_id in ids:
                raise IntegrityError(msg=f"Duplicate entry '{row_id}' for key 'PRIMARY'", errno=1062)
            if email in emails:
                raise IntegrityError(msg=f"Duplicate entry '{email}' for key 'User.email'", errno=1062)
            ids.add(row_id)
            emails.add(email)
        self.conn.inserted.extend(seq)
        self.conn.ids, self.conn.emails = ids, emails
        self.rowcount = len(seq)

    def fetchall(self):
        return list(self._rows)

    def close(self):
        pass


class ScriptedConnection:
    """Stand-in for a mysql.connector connection with a primary key and a unique email."""

    def __init__(self, existing=(), drop_after=None):
        self.ids = {row_id for row_id, _ in existing}
        self.emails = {email for _, email in existing}
        self.drop_after = drop_after
        self.connected = True
        self.cursors_opened = 0
        self.statements = []
        self.inserted = []

    def cursor(self):
        self.cursors_opened += 1
        if self.drop_after is not None and self.cursors_opened > self.drop_after:
            self.connected = False
            raise OperationalError(msg="MySQL Connection not available.")
        return ScriptedCursor(self)

    def is_connected(self):
        return self.connected

    def close(self):
        pass


def mysql_store(conn):
    store = MySQLStore(StoreConfig(engine="mysql", host="db", port=3306, user="app", database="app"))
    store.conn = conn
    store._tables = ["User"]
    store._column_types = {"User": {"id": "int", "email": "varchar"}}
    return store


def users(*ids):
    return [{"id": i, "email": f"user{i}@example.com"} for i in ids]


class TestMySQLBulkInsert:

    def test_existing_keys_are_left_alone(self):
        conn = ScriptedConnection(existing=[(1, "user1@example.com"), (3, "user3@example.com")])
        store = mysql_store(conn)

        inserted = store.bulk_insert(USER, users(1, 2, 3, 4))

        assert inserted == 2
        assert conn.inserted == [(2, "user2@example.com"), (4, "user4@example.com")]
        insert_sql = conn.statements[-1]
        assert insert_sql.startswith("INSERT INTO `User`")
        assert "ON DUPLICATE" not in insert_sql
        assert "IGNORE" not in insert_sql

    def test_all_present_skips_the_insert(self):
        conn = ScriptedConnection(existing=[(1, "user1@example.com"), (2, "user2@example.com")])

        assert mysql_store(conn).bulk_insert(USER, users(1, 2)) == 0
        assert not any(s.startswith("INSERT") for s in conn.statements)

    def test_other_unique_conflict_fails_the_chunk(self):
        conn = ScriptedConnection(existing=[(1, "shared@example.com")])
        rows = [{"id": 5, "email": "fresh@example.com"}, {"id": 6, "email": "shared@example.com"}]

        with pytest.raises(StoreWriteError) as exc:
            mysql_store(conn).bulk_insert(USER, rows)

        assert exc.value.first_key == 5
        assert exc.value.last_key == 6
        assert "User.email" in str(exc.value)
        assert conn.inserted == []

    def test_without_skip_existing_duplicates_fail(self):
        conn = ScriptedConnection(existing=[(1, "user1@example.com")])

        with pytest.raises(StoreWriteError):
            mysql_store(conn).bulk_insert(USER, users(1, 2), skip_existing=False)

        assert not any(" IN (" in s for s in conn.statements)

    def test_dropped_connection_on_cursor(self):
        conn = ScriptedConnection(drop_after=0)

        with pytest.raises(StoreConnectionError):
            mysql_store(conn).bulk_insert(USER, users(1))


class TestMySQLDestinationRun:

    def test_lost_connection_is_reported_not_raised(self):
        source = FakeStore.for_tables([USER], {"User": users(1, 2, 3)})
        # The liveness check uses the first cursor; the first chunk finds the link gone
        destination = mysql_store(ScriptedConnection(drop_after=1))

        report = run_migration(source, destination, [USER], on_progress=lambda *a: None)

        assert report.fatal_error is not None
        assert "Lost connection to MySQL" in report.fatal_error
        assert report.table("User").status == FAILED
        assert report.exit_code == 1
