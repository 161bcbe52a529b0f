"""
Unit tests for the customer SQLite store.

Tests cover:
- Schema initialization
- Create, lookup, save and delete
- find_where filtering
"""

import tempfile
import uuid
from pathlib import Path

import pytest

from hermes.sms_server.apply.customer_store import (
    Customer,
    CustomerNotFoundError,
    CustomerStore,
    CustomerStoreError,
)


class TestCustomerStore:
    """Tests for CustomerStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        """Create an initialized store."""
        store = CustomerStore(str(Path(data_dir) / "customers.db"), wal_mode=False)
        await store.initialize()
        return store

    @pytest.mark.asyncio
    async def test_initialize_creates_database(self, data_dir):
        """Initialize creates missing directories and the database file."""
        db_path = Path(data_dir) / "nested" / "customers.db"
        store = CustomerStore(str(db_path))

        await store.initialize()

        assert db_path.exists()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, store):
        """Initializing twice keeps existing rows."""
        customer_id = uuid.uuid4()
        await store.create(Customer(id=customer_id, name="Alice"))

        await store.initialize()

        assert (await store.find_by_id(customer_id)).name == "Alice"

    @pytest.mark.asyncio
    async def test_create_and_find(self, store):
        """Created rows can be looked up with defaults applied."""
        customer_id = uuid.uuid4()
        await store.create(Customer(id=customer_id, name="Alice"))

        customer = await store.find_by_id(customer_id)

        assert customer == Customer(id=customer_id, name="Alice", contact_allowed=False, phone_number="")

    @pytest.mark.asyncio
    async def test_find_missing_raises_not_found(self, store):
        """Looking up an unknown id raises CustomerNotFoundError."""
        with pytest.raises(CustomerNotFoundError):
            await store.find_by_id(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_create_duplicate_fails(self, store):
        """Creating an existing id is a store error."""
        customer_id = uuid.uuid4()
        await store.create(Customer(id=customer_id, name="Alice"))

        with pytest.raises(CustomerStoreError):
            await store.create(Customer(id=customer_id, name="Alice again"))

    @pytest.mark.asyncio
    async def test_save_overwrites_row(self, store):
        """Save writes every column of an existing row."""
        customer_id = uuid.uuid4()
        await store.create(Customer(id=customer_id, name="Alice"))

        await store.save(
            Customer(id=customer_id, name="Alice", contact_allowed=True, phone_number="+15551234567")
        )

        customer = await store.find_by_id(customer_id)
        assert customer.contact_allowed is True
        assert customer.phone_number == "+15551234567"

    @pytest.mark.asyncio
    async def test_delete(self, store):
        """Delete removes the row and reports whether one existed."""
        customer_id = uuid.uuid4()
        await store.create(Customer(id=customer_id, name="Alice"))

        assert await store.delete(customer_id) is True
        assert await store.delete(customer_id) is False

        with pytest.raises(CustomerNotFoundError):
            await store.find_by_id(customer_id)

    @pytest.mark.asyncio
    async def test_find_where_contact_allowed(self, store):
        """find_where filters on column equality."""
        allowed = Customer(id=uuid.uuid4(), name="Alice", contact_allowed=True, phone_number="+1555")
        blocked = Customer(id=uuid.uuid4(), name="Bob", contact_allowed=False, phone_number="+1666")
        await store.save(allowed)
        await store.save(blocked)

        result = await store.find_where(contact_allowed=True)

        assert result == [allowed]
        assert len(await store.find_where()) == 2

    @pytest.mark.asyncio
    async def test_find_where_rejects_unknown_column(self, store):
        """Unknown columns are refused before touching SQL."""
        with pytest.raises(ValueError):
            await store.find_where(email="alice@example.com")
