"""
Pytest Configuration and Shared Fixtures.

This module provides shared fixtures for testing the card knowledge
extraction pipeline.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage

from src.config.settings import ExtractionSettings, Settings, get_settings
from src.knowledge.state import Card, Domain, Entity
from src.knowledge.store.memory import InMemoryKnowledgeStore
from src.llm.provider import LLMResponse, LLMRouter
from tests.fakes import FakeCardRepository, RecordingNotifier


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Provide test settings with mock values."""
    with patch.dict(
        "os.environ",
        {
            "NEO4J_URI": "bolt://localhost:7687",
            "NEO4J_USERNAME": "neo4j",
            "NEO4J_PASSWORD": "password123",
            "LLM_PROVIDER": "openai",
            "LLM_OPENAI_API_KEY": "test-api-key",
        },
    ):
        # Clear cache and get fresh settings
        get_settings.cache_clear()
        return get_settings()


@pytest.fixture
def extraction_settings() -> ExtractionSettings:
    """Extraction settings with LLM extraction switched on."""
    return ExtractionSettings(llm_enabled=True)


# =============================================================================
# Store and Repository Fixtures
# =============================================================================


@pytest.fixture
def store() -> InMemoryKnowledgeStore:
    """Empty in-memory knowledge store."""
    return InMemoryKnowledgeStore()


@pytest.fixture
def card_repository() -> FakeCardRepository:
    return FakeCardRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def domain(store: InMemoryKnowledgeStore) -> Domain:
    """Domain for board-1, already persisted."""
    return await store.create_domain(Domain(board_id="board-1", name="Engineering"))


@pytest.fixture
async def payment_service(store: InMemoryKnowledgeStore, domain: Domain) -> Entity:
    """System entity with an alias, already persisted."""
    return await store.create_entity(Entity(
        domain_id=domain.id,
        name="PaymentService",
        entity_type="system",
        aliases=["PayService"],
    ))


@pytest.fixture
def scenario_card() -> Card:
    """Card whose title exercises several pattern rules."""
    return Card(
        id="card-1",
        board_id="board-1",
        title="Fix auth-service bug, depends on v2.1.0, assigned to @john",
    )


# =============================================================================
# Mock LLM Fixtures
# =============================================================================


@pytest.fixture
def mock_llm() -> MagicMock:
    """Create a mock LLM that returns configurable responses."""
    llm = MagicMock(spec=BaseChatModel)
    llm.ainvoke = AsyncMock(return_value=AIMessage(content='{"entities": [], "facts": []}'))
    return llm


@pytest.fixture
def mock_router() -> MagicMock:
    """LLM router whose generate() returns an empty extraction."""
    router = MagicMock(spec=LLMRouter)
    router.generate = AsyncMock(
        return_value=LLMResponse(
            success=True,
            content='{"entities": [], "facts": []}',
            provider="openai",
        )
    )
    return router

