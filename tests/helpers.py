"""
Test helpers for direct table access.

These bypass the backend to inspect or plant rows. Not part of the public API.
"""

from psycopg import sql
from psycopg.types.json import Jsonb


class AclTestHelpers:
    def __init__(self, cursor, prefix: str):
        self.cursor = cursor
        self.prefix = prefix

    def _table(self, name: str) -> sql.Identifier:
        return sql.Identifier(self.prefix + name)

    def stored_value(self, table: str, key: str):
        """Raw jsonb value of a row, or None if the row does not exist."""
        self.cursor.execute(
            sql.SQL("SELECT value FROM {} WHERE key = %s").format(self._table(table)),
            (key,),
        )
        row = self.cursor.fetchone()
        return row[0] if row else None

    def count_rows(self, table: str) -> int:
        self.cursor.execute(
            sql.SQL("SELECT COUNT(*) FROM {}").format(self._table(table))
        )
        return self.cursor.fetchone()[0]

    def insert_row(self, table: str, key: str, value):
        """Insert a row as another writer would have left it."""
        self.cursor.execute(
            sql.SQL("INSERT INTO {} (key, value) VALUES (%s, %s)").format(
                self._table(table)
            ),
            (key, Jsonb(value)),
        )

    def lock_row(self, table: str, key: str):
        """Take a FOR UPDATE lock on a row; held until the connection commits."""
        self.cursor.execute(
            sql.SQL("SELECT value FROM {} WHERE key = %s FOR UPDATE").format(
                self._table(table)
            ),
            (key,),
        )
        return self.cursor.fetchone()

    def delete_row(self, table: str, key: str):
        self.cursor.execute(
            sql.SQL("DELETE FROM {} WHERE key = %s").format(self._table(table)),
            (key,),
        )

    def count_lock_waiters(self) -> int:
        """Sessions currently blocked on a row lock taken with FOR UPDATE."""
        self.cursor.execute(
            """
            SELECT COUNT(*) FROM pg_stat_activity
            WHERE wait_event_type = 'Lock' AND query ILIKE %s
        """,
            ("%FOR UPDATE%",),
        )
        return self.cursor.fetchone()[0]
