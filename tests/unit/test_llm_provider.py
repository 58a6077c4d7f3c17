"""
Unit Tests for the LLM Router.

Tests provider failover, per-attempt timeouts and response parsing.
"""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage
from pydantic import BaseModel

from src.config.settings import LLMSettings
from src.llm.provider import (
    LLMProvider,
    LLMResponse,
    LLMRouter,
    ProviderConfig,
    ProviderType,
    categorize_error,
    create_llm_router,
    create_provider_configs,
)


def make_llm(content: Any = None, error: Exception | None = None, delay: float = 0.0) -> MagicMock:
    llm = MagicMock(spec=BaseChatModel)

    async def ainvoke(*args: Any, **kwargs: Any) -> AIMessage:
        if delay:
            await asyncio.sleep(delay)
        if error is not None:
            raise error
        return AIMessage(content=content)

    llm.ainvoke = AsyncMock(side_effect=ainvoke)
    return llm


def make_provider(provider_type: ProviderType, llm: MagicMock, priority: int) -> LLMProvider:
    return LLMProvider(ProviderConfig(provider_type=provider_type, priority=priority), llm=llm)


class Answer(BaseModel):
    answer: str


# =============================================================================
# Router Tests
# =============================================================================


class TestLLMRouter:
    """Test routing and failover."""

    @pytest.mark.asyncio
    async def test_first_provider_succeeds(self) -> None:
        """Test the happy path."""
        router = LLMRouter([make_provider(ProviderType.OPENAI, make_llm('{"answer": "ok"}'), 1)])
        response = await router.generate("question")

        assert response.success
        assert response.provider == "openai"
        assert response.content == '{"answer": "ok"}'
        assert response.attempts == ["openai"]
        assert router.providers[0].metrics.successful_requests == 1

    @pytest.mark.asyncio
    async def test_failover_on_error(self) -> None:
        """Test that a failing provider hands over to the next one."""
        openai = make_provider(ProviderType.OPENAI, make_llm(error=RuntimeError("429 rate limit")), 1)
        anthropic = make_provider(ProviderType.ANTHROPIC, make_llm("{}"), 2)
        router = LLMRouter([anthropic, openai])

        response = await router.generate("question")

        assert response.success
        assert response.provider == "anthropic"
        assert response.attempts == ["openai", "anthropic"]
        assert router.failover_count == 1
        assert openai.metrics.failed_requests == 1

    @pytest.mark.asyncio
    async def test_failover_on_timeout(self) -> None:
        """Test that a slow provider is abandoned after the attempt timeout."""
        slow = make_provider(ProviderType.OPENAI, make_llm("{}", delay=1.0), 1)
        fast = make_provider(ProviderType.LOCAL, make_llm('{"answer": "local"}'), 2)
        router = LLMRouter([slow, fast])

        response = await router.generate("question", timeout=0.01)

        assert response.success
        assert response.provider == "local"
        assert slow.metrics.timeouts == 1

    @pytest.mark.asyncio
    async def test_all_providers_fail(self) -> None:
        """Test that total failure is reported, not raised."""
        router = LLMRouter([
            make_provider(ProviderType.OPENAI, make_llm("{}", delay=1.0), 1),
            make_provider(ProviderType.ANTHROPIC, make_llm(error=RuntimeError("boom")), 2),
        ])

        response = await router.generate("question", timeout=0.01)

        assert not response.success
        assert response.content is None
        assert response.error == "openai: timeout; anthropic: boom"

    @pytest.mark.asyncio
    async def test_failover_disabled(self) -> None:
        """Test that only the first provider is tried without failover."""
        backup_llm = make_llm("{}")
        router = LLMRouter(
            [
                make_provider(ProviderType.OPENAI, make_llm(error=RuntimeError("down")), 1),
                make_provider(ProviderType.LOCAL, backup_llm, 2),
            ],
            enable_failover=False,
        )

        response = await router.generate("question")

        assert not response.success
        backup_llm.ainvoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_schema_appended(self) -> None:
        """Test that the JSON schema is included in the prompt."""
        llm = make_llm("{}")
        router = LLMRouter([make_provider(ProviderType.OPENAI, llm, 1)])

        await router.generate("question", schema=Answer.model_json_schema())

        messages = llm.ainvoke.call_args.args[0]
        assert messages[1].content.startswith("question")
        assert "Response Format" in messages[1].content
        assert '"answer"' in messages[1].content

    @pytest.mark.asyncio
    async def test_content_blocks_joined(self) -> None:
        """Test Anthropic-style list content."""
        llm = make_llm([{"type": "text", "text": '{"answer": '}, {"type": "text", "text": '"x"}'}])
        router = LLMRouter([make_provider(ProviderType.ANTHROPIC, llm, 1)])

        response = await router.generate("question")

        assert response.content == '{"answer": "x"}'

    def test_requires_enabled_provider(self) -> None:
        config = ProviderConfig(provider_type=ProviderType.OPENAI, enabled=False)

        with pytest.raises(ValueError):
            LLMRouter([LLMProvider(config, llm=make_llm("{}"))])


# =============================================================================
# Response Parsing Tests
# =============================================================================


class TestLLMResponse:
    """Test JSON parsing and validation of responses."""

    def test_parsed_json_with_fences(self) -> None:
        response = LLMResponse(success=True, content='```json\n{"answer": "yes"}\n```')

        assert response.parsed_json() == {"answer": "yes"}

    @pytest.mark.parametrize("content", [None, "", "not json at all", "[1, 2]"])
    def test_parsed_json_rejects(self, content: str | None) -> None:
        """Test that non-object content yields None."""
        assert LLMResponse(success=True, content=content).parsed_json() is None

    def test_validated(self) -> None:
        model, error = LLMResponse(success=True, content='{"answer": "yes"}').validated(Answer)

        assert error is None
        assert model == Answer(answer="yes")

    def test_validation_error(self) -> None:
        model, error = LLMResponse(success=True, content='{"other": 1}').validated(Answer)

        assert model is None
        assert error is not None and "answer" in error


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    """Test error categorization and provider configuration."""

    @pytest.mark.parametrize(
        "error,category",
        [
            (TimeoutError(), "timeout"),
            (RuntimeError("Invalid API key"), "auth_error"),
            (RuntimeError("insufficient quota"), "billing_error"),
            (RuntimeError("429 Too Many Requests"), "rate_limit"),
            (RuntimeError("502 Bad Gateway"), "server_error"),
            (RuntimeError("connection refused"), "connection_error"),
            (RuntimeError("???"), "unknown"),
        ],
    )
    def test_categorize_error(self, error: Exception, category: str) -> None:
        assert categorize_error(error) == category

    def test_provider_configs(self) -> None:
        """Test priority order derived from settings."""
        settings = LLMSettings(provider="anthropic", openai_api_key="sk-1", anthropic_api_key="sk-2")
        configs = sorted(create_provider_configs(settings), key=lambda c: c.priority)

        assert [c.provider_type for c in configs] == [
            ProviderType.ANTHROPIC,
            ProviderType.OPENAI,
            ProviderType.LOCAL,
        ]
        assert configs[0].api_key == "sk-2"

    def test_local_always_configured(self) -> None:
        settings = LLMSettings(openai_api_key=None, anthropic_api_key=None)

        assert [c.provider_type for c in create_provider_configs(settings)] == [ProviderType.LOCAL]

    def test_injected_llm_used(self, mock_llm: MagicMock) -> None:
        """Test that an injected chat model bypasses lazy creation."""
        provider = LLMProvider(ProviderConfig(provider_type=ProviderType.OPENAI), llm=mock_llm)

        assert provider.get_llm() is mock_llm
        assert provider.name == "openai"

    def test_create_llm_router(self) -> None:
        """Test that the router follows settings without building chat models eagerly."""
        settings = LLMSettings(
            provider="local",
            openai_api_key=None,
            anthropic_api_key=None,
            enable_failover=False,
            timeout_seconds=5.0,
        )

        router = create_llm_router(settings)

        assert [p.name for p in router.providers] == ["local"]

    @pytest.mark.asyncio
    async def test_metrics(self) -> None:
        """Test per-provider success rate and latency bookkeeping."""
        provider = make_provider(ProviderType.OPENAI, make_llm("{}"), 1)
        router = LLMRouter([provider])

        await router.generate("question")

        assert provider.metrics.success_rate == 1.0
        assert provider.metrics.avg_latency_ms >= 0.0
