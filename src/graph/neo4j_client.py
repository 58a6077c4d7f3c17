"""
Knowledge Graph Client Module.

Neo4j client for the card knowledge graph.
Supports connection management, schema setup and raw Cypher execution.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from neo4j import AsyncDriver, AsyncGraphDatabase, AsyncSession
from neo4j.exceptions import ClientError

from src.config.settings import Neo4jSettings, get_settings

logger = structlog.get_logger(__name__)


class KnowledgeGraphClient:
    """
    Neo4j client for knowledge graph operations.

    Node labels: Domain, Entity, Fact, Mention, CardFact.
    """

    # Uniqueness constraints
    SCHEMA_CONSTRAINTS = [
        "CREATE CONSTRAINT domain_id IF NOT EXISTS FOR (n:Domain) REQUIRE n.id IS UNIQUE",
        "CREATE CONSTRAINT domain_board_name IF NOT EXISTS FOR (n:Domain) REQUIRE (n.board_id, n.name) IS UNIQUE",
        "CREATE CONSTRAINT entity_id IF NOT EXISTS FOR (n:Entity) REQUIRE n.id IS UNIQUE",
        "CREATE CONSTRAINT entity_domain_name IF NOT EXISTS FOR (n:Entity) REQUIRE (n.domain_id, n.name) IS UNIQUE",
        "CREATE CONSTRAINT entity_external IF NOT EXISTS FOR (n:Entity) REQUIRE (n.external_source, n.external_id) IS UNIQUE",
        "CREATE CONSTRAINT fact_id IF NOT EXISTS FOR (n:Fact) REQUIRE n.id IS UNIQUE",
        "CREATE CONSTRAINT fact_current_key IF NOT EXISTS FOR (n:Fact) REQUIRE n.current_key IS UNIQUE",
        "CREATE CONSTRAINT mention_id IF NOT EXISTS FOR (n:Mention) REQUIRE n.id IS UNIQUE",
        "CREATE CONSTRAINT mention_key IF NOT EXISTS FOR (n:Mention) REQUIRE (n.entity_id, n.card_id, n.mention_text, n.source_field) IS UNIQUE",
        "CREATE CONSTRAINT card_fact_id IF NOT EXISTS FOR (n:CardFact) REQUIRE n.id IS UNIQUE",
        "CREATE CONSTRAINT card_fact_key IF NOT EXISTS FOR (n:CardFact) REQUIRE (n.card_id, n.fact_id, n.role) IS UNIQUE",
    ]

    # Property indexes for fast lookups
    SCHEMA_INDEXES = [
        "CREATE INDEX domain_board IF NOT EXISTS FOR (n:Domain) ON (n.board_id)",
        "CREATE INDEX entity_domain IF NOT EXISTS FOR (n:Entity) ON (n.domain_id)",
        "CREATE INDEX fact_subject IF NOT EXISTS FOR (n:Fact) ON (n.subject_entity_id, n.predicate)",
        "CREATE INDEX fact_object IF NOT EXISTS FOR (n:Fact) ON (n.object_entity_id)",
        "CREATE INDEX mention_card IF NOT EXISTS FOR (n:Mention) ON (n.card_id)",
        "CREATE INDEX card_fact_card IF NOT EXISTS FOR (n:CardFact) ON (n.card_id)",
    ]

    def __init__(self, settings: Neo4jSettings | None = None) -> None:
        """Initialize the client with optional custom settings."""
        self._driver: AsyncDriver | None = None
        self._settings = settings or get_settings().neo4j

    async def connect(self) -> None:
        """Establish connection to Neo4j database."""
        if self._driver is not None:
            return

        self._driver = AsyncGraphDatabase.driver(
            self._settings.uri,
            auth=(self._settings.username, self._settings.password.get_secret_value()),
            max_connection_pool_size=self._settings.max_connection_pool_size,
        )
        await self._driver.verify_connectivity()
        logger.info("Connected to Neo4j", uri=self._settings.uri)

    async def close(self) -> None:
        """Close the database connection."""
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
            logger.info("Disconnected from Neo4j")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session."""
        if self._driver is None:
            await self.connect()

        assert self._driver is not None  # Type guard for mypy
        async with self._driver.session(database=self._settings.database) as session:
            yield session

    # =========================================================================
    # Schema Management
    # =========================================================================

    async def setup_schema(self) -> dict[str, Any]:
        """
        Create all schema constraints and indexes.

        Returns:
            Dictionary with creation results per schema object
        """
        results: dict[str, list[Any]] = {"constraints": [], "indexes": [], "errors": []}

        async with self.session() as session:
            for kind, queries in (
                ("constraints", self.SCHEMA_CONSTRAINTS),
                ("indexes", self.SCHEMA_INDEXES),
            ):
                for query in queries:
                    try:
                        await session.run(query)
                        results[kind].append({"query": query[:50], "status": "created"})
                    except ClientError as e:
                        if "already exists" in str(e).lower():
                            results[kind].append({"query": query[:50], "status": "exists"})
                        else:
                            results["errors"].append({"query": query[:50], "error": str(e)})
                            logger.warning("Schema creation failed", kind=kind, error=str(e))

        logger.info(
            "Schema setup completed",
            constraints=len(results["constraints"]),
            indexes=len(results["indexes"]),
            errors=len(results["errors"]),
        )
        return results

    # =========================================================================
    # Generic Query Execution
    # =========================================================================

    async def execute_cypher(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute a Cypher query in its own session.

        Args:
            query: Cypher query string
            parameters: Query parameters

        Returns:
            List of result records as dictionaries
        """
        async with self.session() as session:
            result = await session.run(query, parameters or {})
            records: list[dict[str, Any]] = await result.data()

        logger.debug(
            "Cypher executed",
            query=query[:100],
            param_count=len(parameters) if parameters else 0,
            result_count=len(records),
        )

        return records
