"""
Unit Tests for Neo4j Client.

Tests the KnowledgeGraphClient class functionality.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from neo4j.exceptions import ClientError

from src.config.settings import Neo4jSettings
from src.graph.neo4j_client import KnowledgeGraphClient


def make_session(data: list[dict] | None = None) -> MagicMock:
    mock_result = MagicMock()
    mock_result.data = AsyncMock(return_value=data or [])

    mock_session = MagicMock()
    mock_session.run = AsyncMock(return_value=mock_result)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=False)
    return mock_session


def make_driver(mock_db: MagicMock, session: MagicMock | None = None) -> MagicMock:
    mock_driver = MagicMock()
    mock_driver.verify_connectivity = AsyncMock()
    mock_driver.close = AsyncMock()
    if session is not None:
        mock_driver.session.return_value = session
    mock_db.driver.return_value = mock_driver
    return mock_driver


@pytest.fixture
def neo4j_settings() -> Neo4jSettings:
    return Neo4jSettings(uri="bolt://graph:7687", username="neo4j", password="secret", database="cards")


class TestKnowledgeGraphClient:
    """Test cases for KnowledgeGraphClient."""

    # =========================================================================
    # Connection Tests
    # =========================================================================

    @pytest.mark.asyncio
    async def test_connect_success(self, neo4j_settings: Neo4jSettings) -> None:
        """Test successful database connection."""
        with patch("src.graph.neo4j_client.AsyncGraphDatabase") as mock_db:
            mock_driver = make_driver(mock_db)

            client = KnowledgeGraphClient(neo4j_settings)
            await client.connect()

            mock_db.driver.assert_called_once_with(
                "bolt://graph:7687",
                auth=("neo4j", "secret"),
                max_connection_pool_size=50,
            )
            mock_driver.verify_connectivity.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_already_connected(self, neo4j_settings: Neo4jSettings) -> None:
        """Test that connect() is idempotent."""
        with patch("src.graph.neo4j_client.AsyncGraphDatabase") as mock_db:
            make_driver(mock_db)

            client = KnowledgeGraphClient(neo4j_settings)
            await client.connect()
            await client.connect()

            assert mock_db.driver.call_count == 1

    @pytest.mark.asyncio
    async def test_close(self, neo4j_settings: Neo4jSettings) -> None:
        """Test database disconnection."""
        with patch("src.graph.neo4j_client.AsyncGraphDatabase") as mock_db:
            mock_driver = make_driver(mock_db)

            client = KnowledgeGraphClient(neo4j_settings)
            await client.connect()
            await client.close()
            await client.close()

            mock_driver.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_session_connects_lazily(self, neo4j_settings: Neo4jSettings) -> None:
        with patch("src.graph.neo4j_client.AsyncGraphDatabase") as mock_db:
            mock_session = make_session()
            mock_driver = make_driver(mock_db, mock_session)

            client = KnowledgeGraphClient(neo4j_settings)
            async with client.session() as session:
                assert session is mock_session

            mock_driver.session.assert_called_once_with(database="cards")

    # =========================================================================
    # Schema Tests
    # =========================================================================

    @pytest.mark.asyncio
    async def test_setup_schema(self, neo4j_settings: Neo4jSettings) -> None:
        """Test schema setup creates constraints and indexes."""
        with patch("src.graph.neo4j_client.AsyncGraphDatabase") as mock_db:
            mock_session = make_session()
            make_driver(mock_db, mock_session)

            client = KnowledgeGraphClient(neo4j_settings)
            result = await client.setup_schema()

            assert mock_session.run.call_count == (
                len(KnowledgeGraphClient.SCHEMA_CONSTRAINTS) + len(KnowledgeGraphClient.SCHEMA_INDEXES)
            )
            assert len(result["constraints"]) == len(KnowledgeGraphClient.SCHEMA_CONSTRAINTS)
            assert len(result["indexes"]) == len(KnowledgeGraphClient.SCHEMA_INDEXES)
            assert result["errors"] == []

    @pytest.mark.asyncio
    async def test_setup_schema_existing_and_failed(self, neo4j_settings: Neo4jSettings) -> None:
        """Test that existing objects are tolerated and other errors collected."""
        with patch("src.graph.neo4j_client.AsyncGraphDatabase") as mock_db:
            mock_session = make_session()
            failures = [
                ClientError("An equivalent constraint already exists"),
                ClientError("Unsupported administration command"),
            ]

            async def run(query: str) -> MagicMock:
                if failures:
                    raise failures.pop(0)
                return MagicMock()

            mock_session.run = AsyncMock(side_effect=run)
            make_driver(mock_db, mock_session)

            client = KnowledgeGraphClient(neo4j_settings)
            result = await client.setup_schema()

            assert result["constraints"][0]["status"] == "exists"
            assert len(result["errors"]) == 1
            assert "Unsupported" in result["errors"][0]["error"]

    def test_schema_covers_natural_keys(self) -> None:
        """Test that every natural key has a uniqueness constraint."""
        constraints = " ".join(KnowledgeGraphClient.SCHEMA_CONSTRAINTS)

        assert "(n.board_id, n.name)" in constraints
        assert "(n.domain_id, n.name)" in constraints
        assert "(n.external_source, n.external_id)" in constraints
        assert "(n.entity_id, n.card_id, n.mention_text, n.source_field)" in constraints
        assert "(n.card_id, n.fact_id, n.role)" in constraints
        assert "n.current_key IS UNIQUE" in constraints

    # =========================================================================
    # Cypher Execution Tests
    # =========================================================================

    @pytest.mark.asyncio
    async def test_execute_cypher(self, neo4j_settings: Neo4jSettings) -> None:
        """Test raw Cypher execution."""
        with patch("src.graph.neo4j_client.AsyncGraphDatabase") as mock_db:
            mock_session = make_session([{"name": "Auth Service"}, {"name": "John"}])
            make_driver(mock_db, mock_session)

            client = KnowledgeGraphClient(neo4j_settings)
            results = await client.execute_cypher("MATCH (e:Entity) RETURN e.name AS name")

            assert results == [{"name": "Auth Service"}, {"name": "John"}]
            mock_session.run.assert_called_once_with("MATCH (e:Entity) RETURN e.name AS name", {})

    @pytest.mark.asyncio
    async def test_execute_cypher_with_parameters(self, neo4j_settings: Neo4jSettings) -> None:
        """Test Cypher execution with parameters."""
        with patch("src.graph.neo4j_client.AsyncGraphDatabase") as mock_db:
            mock_session = make_session([{"name": "Auth Service"}])
            make_driver(mock_db, mock_session)

            client = KnowledgeGraphClient(neo4j_settings)
            await client.execute_cypher(
                "MATCH (e:Entity) WHERE e.name = $name RETURN e.name AS name",
                {"name": "Auth Service"},
            )

            mock_session.run.assert_called_with(
                "MATCH (e:Entity) WHERE e.name = $name RETURN e.name AS name",
                {"name": "Auth Service"},
            )
