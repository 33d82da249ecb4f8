"""Tests for the SQLAlchemy query client."""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from paper_health.database import SQLAlchemyQueryClient
from paper_health.health.collaborators import QueryClient, Reconnectable
from paper_health.health.models import HealthState
from paper_health.health.probes import DatabaseProbe


@pytest.fixture
def client():
    """Create a client backed by an in-memory SQLite database."""
    client = SQLAlchemyQueryClient.from_url("sqlite:///:memory:")
    yield client
    client.close()


class TestSQLAlchemyQueryClient:
    """Test SQLAlchemyQueryClient class."""

    def test_satisfies_collaborator_protocols(self, client):
        """Test structural typing against the probe contracts."""
        assert isinstance(client, QueryClient)
        assert isinstance(client, Reconnectable)

    @pytest.mark.asyncio
    async def test_query_returns_rows(self, client):
        """Test a row-returning statement."""
        rows = await client.query("SELECT 1")

        assert [tuple(row) for row in rows] == [(1,)]

    @pytest.mark.asyncio
    async def test_statement_without_rows(self, client):
        """Test DDL and DML statements."""
        await client.query("CREATE TABLE papers (id INTEGER PRIMARY KEY, title TEXT)")
        inserted = await client.query("INSERT INTO papers (title) VALUES ('On Health')")

        assert inserted == 1
        rows = await client.query("SELECT COUNT(*) FROM papers LIMIT 1")
        assert rows[0][0] == 1

    @pytest.mark.asyncio
    async def test_query_error_propagates(self, client):
        """Test that SQL errors reach the caller."""
        with pytest.raises(OperationalError):
            await client.query("SELECT * FROM missing_table")

    @pytest.mark.asyncio
    async def test_reconnect(self, client):
        """Test recycling the connection pool."""
        assert await client.reconnect() is True

    @pytest.mark.asyncio
    async def test_reconnect_failure(self, client):
        """Test a database that stays unreachable after recycling."""
        with patch.object(
            client, "_execute", side_effect=OperationalError("SELECT 1", {}, Exception("down"))
        ):
            assert await client.reconnect() is False


class TestDatabaseProbeWithSQLite:
    """Test the database probe against a real engine."""

    @pytest.mark.asyncio
    async def test_probe_reports_missing_table(self, client):
        """Test probe metadata when a critical query fails."""
        probe = DatabaseProbe(client, critical_queries=["SELECT * FROM authors"])

        result = await probe.probe()

        assert result.state == HealthState.HEALTHY
        outcome = result.metadata["critical_queries"]["SELECT * FROM authors"]
        assert outcome["success"] is False
        assert "authors" in outcome["error"]
