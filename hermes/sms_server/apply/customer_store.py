"""
Customer SQLite store for the SMS service.

This module manages the local projection of upstream customers together
with their SMS contact preference. It is the only state the service owns:
rows are created and renamed from the customer stream and their contact
fields are overwritten from the preference stream.

The store is a materialized view of the upstream change streams. It can be
rebuilt by replaying the customer and preference topics from the start.

Invariants:
    - One row per customer id
    - Rows are only created from customer change events, never from
      preference records
    - Every write is a single statement in its own transaction

How to change safely:
    - Schema changes must be additive (ALTER TABLE ... ADD COLUMN)
    - Keep find_where() restricted to known columns

Table schema:
    customers:
        - id TEXT PRIMARY KEY (UUID)
        - name TEXT
        - contact_allowed INTEGER (0/1)
        - phone_number TEXT
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_COLUMNS = ("id", "name", "contact_allowed", "phone_number")


class CustomerNotFoundError(Exception):
    """No customer row exists for the requested id."""

    pass


class CustomerStoreError(Exception):
    """The store could not complete an operation."""

    pass


@dataclass
class Customer:
    """A customer row.

    Attributes:
        id: Customer identifier (upstream primary key)
        name: Display name
        contact_allowed: Whether the customer opted in to SMS notifications
        phone_number: SMS destination, taken from the preference lookup key
    """

    id: uuid.UUID
    name: str = ""
    contact_allowed: bool = False
    phone_number: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Customer:
        return cls(
            id=uuid.UUID(row["id"]),
            name=row["name"],
            contact_allowed=bool(row["contact_allowed"]),
            phone_number=row["phone_number"],
        )


class CustomerStore:
    """SQLite store for customer rows.

    Thread safety:
        A connection is opened per operation. SQLite serializes concurrent
        writers; WAL mode lets reads proceed during a write.

    Example:
        >>> store = CustomerStore("/var/lib/hermes/customers.db")
        >>> await store.initialize()
        >>> await store.create(Customer(id=customer_id, name="Alice"))
        >>> await store.find_where(contact_allowed=True)
    """

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: Path of the SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Raises:
            CustomerStoreError: If SQLite reports an error
        """
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise CustomerStoreError(f"Could not open {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        except sqlite3.Error as e:
            raise CustomerStoreError(str(e)) from e
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist.

        Raises:
            CustomerStoreError: If the database cannot be created
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CustomerStoreError(f"Could not create {self.db_path.parent}: {e}") from e

        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS customers (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    contact_allowed INTEGER NOT NULL DEFAULT 0,
                    phone_number TEXT NOT NULL DEFAULT ''
                );

                CREATE INDEX IF NOT EXISTS idx_customers_contact_allowed
                    ON customers(contact_allowed);
            """)

        logger.info("Initialized customer store", extra={"db_path": str(self.db_path)})

    async def find_by_id(self, customer_id: uuid.UUID) -> Customer:
        """Look up a customer.

        Raises:
            CustomerNotFoundError: If no row exists for customer_id
            CustomerStoreError: On database errors
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM customers WHERE id = ?",
                (str(customer_id),),
            ).fetchone()

        if row is None:
            raise CustomerNotFoundError(f"Customer not found: {customer_id}")

        return Customer.from_row(row)

    async def create(self, customer: Customer) -> None:
        """Insert a new row.

        Raises:
            CustomerStoreError: If the row already exists or on database errors
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO customers (id, name, contact_allowed, phone_number)
                VALUES (?, ?, ?, ?)
                """,
                self._params(customer),
            )

        logger.debug("Created customer", extra={"customer_id": str(customer.id)})

    async def save(self, customer: Customer) -> None:
        """Write every column of the row, inserting it if missing."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO customers (id, name, contact_allowed, phone_number)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    contact_allowed = excluded.contact_allowed,
                    phone_number = excluded.phone_number
                """,
                self._params(customer),
            )

        logger.debug("Saved customer", extra={"customer_id": str(customer.id)})

    async def delete(self, customer_id: uuid.UUID) -> bool:
        """Delete a row.

        Returns:
            True if a row was deleted, False if none existed
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM customers WHERE id = ?", (str(customer_id),))

        logger.debug("Deleted customer", extra={"customer_id": str(customer_id)})
        return cursor.rowcount > 0

    async def find_where(self, **criteria: Any) -> list[Customer]:
        """List customers whose columns equal the given values.

        Example:
            >>> await store.find_where(contact_allowed=True)

        Raises:
            ValueError: If a criterion names an unknown column
            CustomerStoreError: On database errors
        """
        unknown = [name for name in criteria if name not in _COLUMNS]
        if unknown:
            raise ValueError(f"Unknown customer columns: {unknown}")

        sql = "SELECT * FROM customers"
        params: list[Any] = []
        if criteria:
            sql += " WHERE " + " AND ".join(f"{name} = ?" for name in criteria)
            params = [self._to_column(value) for value in criteria.values()]

        with self._get_connection() as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()

        return [Customer.from_row(row) for row in rows]

    @staticmethod
    def _to_column(value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, uuid.UUID):
            return str(value)
        return value

    @staticmethod
    def _params(customer: Customer) -> tuple:
        return (
            str(customer.id),
            customer.name,
            int(customer.contact_allowed),
            customer.phone_number,
        )
