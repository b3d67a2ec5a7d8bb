import pytest
from sqlalchemy.exc import DBAPIError

from core_logic.source_connector import SourceConnector


class _FailingEngine:
    """Engine stand-in whose connections fail on open with a fixed error."""

    def __init__(self, error: Exception):
        self.error = error
        self.disposed = False

    def connect(self):
        return self

    async def __aenter__(self):
        raise self.error

    async def __aexit__(self, *exc_info):
        return False

    async def dispose(self):
        self.disposed = True


@pytest.mark.asyncio
async def test_unreachable_database_is_mapped():
    connector = SourceConnector("source1", "Merchant_one", engine=_FailingEngine(ConnectionRefusedError(111, "Connect call failed")))

    with pytest.raises(RuntimeError, match="Could not reach source1"):
        await connector.fetch("SELECT 1")


@pytest.mark.asyncio
async def test_statement_timeout_is_mapped():
    error = DBAPIError("SELECT pg_sleep(60)", {}, Exception("canceling statement due to statement timeout"))
    connector = SourceConnector("source2", "Merchant_two", engine=_FailingEngine(error), timeout_seconds=30)

    with pytest.raises(TimeoutError, match="exceeded time limits"):
        await connector.fetch("SELECT pg_sleep(60)")


@pytest.mark.asyncio
async def test_other_database_errors_become_value_errors():
    error = DBAPIError("SELECT nope FROM products", {}, Exception('column "nope" does not exist'))
    connector = SourceConnector("source1", "Merchant_one", engine=_FailingEngine(error))

    with pytest.raises(ValueError, match="Database Execution Error on source1"):
        await connector.fetch("SELECT nope FROM products")


@pytest.mark.asyncio
async def test_read_only_guard_rejects_writes():
    engine = _FailingEngine(AssertionError("should not connect"))
    connector = SourceConnector("source1", "Merchant_one", engine=engine, enforce_read_only=True)

    with pytest.raises(PermissionError):
        await connector.fetch("DELETE FROM products")

    await connector.close()
    assert engine.disposed


def test_connector_needs_uri_or_engine():
    with pytest.raises(ValueError):
        SourceConnector("source1", "Merchant_one")
