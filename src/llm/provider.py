"""
LLM Router with Automatic Failover.

Exposes the single capability the extraction pipeline needs:

    generate(prompt, schema=None, timeout=None) -> LLMResponse

Features:
- Providers tried in priority order (OpenAI -> Anthropic -> Local LLM)
- Per-attempt timeout
- Failover to the next provider on error or timeout
- Never raises: failures come back as LLMResponse(success=False, error=...)
- Metrics and logging per provider
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import structlog
from langchain_core.exceptions import OutputParserException
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.output_parsers import JsonOutputParser
from pydantic import BaseModel, SecretStr, ValidationError

from src.config.settings import LLMSettings, get_settings

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

JSON_SYSTEM_PROMPT = (
    "You are a precise information extraction system. "
    "Respond with a single JSON object and no additional text."
)


class ProviderType(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    LOCAL = "local"


@dataclass
class ProviderConfig:
    """Configuration for a single LLM provider."""
    provider_type: ProviderType
    api_key: str | None = None
    model: str | None = None
    temperature: float = 0.0
    max_tokens: int = 4096
    timeout: float = 60.0

    # Local LLM specific
    local_base_url: str = "http://localhost:11434"

    # Priority (lower = higher priority)
    priority: int = 100

    # Whether this provider is enabled
    enabled: bool = True


@dataclass
class ProviderMetrics:
    """Metrics for a provider."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    timeouts: int = 0
    total_latency_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.successful_requests / self.total_requests

    @property
    def avg_latency_ms(self) -> float:
        if self.successful_requests == 0:
            return 0.0
        return self.total_latency_ms / self.successful_requests


@dataclass
class LLMResponse:
    """Outcome of a generate() call."""

    success: bool
    content: str | None = None
    error: str | None = None
    provider: str | None = None
    latency_ms: float = 0.0
    attempts: list[str] = field(default_factory=list)

    def parsed_json(self) -> dict[str, Any] | None:
        """Best-effort JSON decoding of the content (tolerates markdown fences)."""
        if not self.content:
            return None
        try:
            data = JsonOutputParser().parse(self.content)
        except (OutputParserException, json.JSONDecodeError) as e:
            logger.debug("LLM content is not valid JSON", error=str(e))
            return None
        return data if isinstance(data, dict) else None

    def validated(self, model: type[ModelT]) -> tuple[ModelT | None, str | None]:
        """
        Validate the JSON content against a pydantic model.

        Returns:
            Tuple of (validated model or None, validation error or None)
        """
        data = self.parsed_json()
        if data is None:
            return None, "response is not a JSON object"
        try:
            return model.model_validate(data), None
        except ValidationError as e:
            return None, str(e)


class LLMProvider:
    """
    Single LLM provider wrapper.

    The chat model is created lazily from the config unless one is injected.
    """

    def __init__(self, config: ProviderConfig, llm: BaseChatModel | None = None) -> None:
        self.config = config
        self._llm = llm
        self._metrics = ProviderMetrics()

    @property
    def provider_type(self) -> ProviderType:
        return self.config.provider_type

    @property
    def name(self) -> str:
        return self.config.provider_type.value

    @property
    def metrics(self) -> ProviderMetrics:
        return self._metrics

    def _create_llm(self) -> BaseChatModel:
        """Create LangChain LLM instance based on provider type."""
        if self.config.provider_type == ProviderType.OPENAI:
            from langchain_openai import ChatOpenAI

            return ChatOpenAI(
                model=self.config.model or "gpt-4o-mini",
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                api_key=SecretStr(self.config.api_key) if self.config.api_key else None,
                timeout=self.config.timeout,
                max_retries=0,  # Failover is handled by the router
            )

        elif self.config.provider_type == ProviderType.ANTHROPIC:
            from langchain_anthropic import ChatAnthropic

            return ChatAnthropic(
                model=self.config.model or "claude-3-5-sonnet-20241022",
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                api_key=SecretStr(self.config.api_key) if self.config.api_key else None,
                timeout=self.config.timeout,
            )

        elif self.config.provider_type == ProviderType.LOCAL:
            from langchain_ollama import ChatOllama

            return ChatOllama(
                model=self.config.model or "llama3.2",
                base_url=self.config.local_base_url,
                temperature=self.config.temperature,
            )

        raise ValueError(f"Unsupported provider type: {self.config.provider_type}")

    def get_llm(self) -> BaseChatModel:
        """Get the underlying LLM instance."""
        if self._llm is None:
            self._llm = self._create_llm()
            logger.info(
                "LLM provider initialized",
                provider=self.name,
                model=self.config.model,
            )
        return self._llm

    async def complete(self, prompt: str, timeout: float) -> str:
        """
        Send a single prompt and return the text content.

        Raises:
            TimeoutError: when the call exceeds ``timeout`` seconds
            Exception: any provider error
        """
        llm = self.get_llm()
        messages = [SystemMessage(content=JSON_SYSTEM_PROMPT), HumanMessage(content=prompt)]
        response = await asyncio.wait_for(llm.ainvoke(messages), timeout=timeout)
        content = response.content
        if isinstance(content, list):
            # Anthropic-style content blocks
            content = "".join(
                block.get("text", "") if isinstance(block, dict) else str(block)
                for block in content
            )
        return str(content)


def categorize_error(error: BaseException) -> str:
    """Categorize a provider error for logging."""
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return "timeout"

    error_str = str(error).lower()

    if any(x in error_str for x in ["api key", "authentication", "unauthorized", "invalid_api_key"]):
        return "auth_error"
    if any(x in error_str for x in ["credit", "billing", "quota", "insufficient"]):
        return "billing_error"
    if any(x in error_str for x in ["rate limit", "429", "too many requests"]):
        return "rate_limit"
    if any(x in error_str for x in ["timeout", "timed out"]):
        return "timeout"
    if any(x in error_str for x in ["500", "502", "503", "504", "server error"]):
        return "server_error"
    if any(x in error_str for x in ["connection", "network", "unreachable"]):
        return "connection_error"
    return "unknown"


class LLMRouter:
    """
    Routes generation requests across providers with automatic failover.

    Attempts providers in priority order, failing over to the next
    provider when one fails or times out.
    """

    def __init__(
        self,
        providers: list[LLMProvider],
        default_timeout: float = 60.0,
        enable_failover: bool = True,
    ) -> None:
        """
        Initialize the router.

        Args:
            providers: Providers to route across
            default_timeout: Timeout used when generate() receives none
            enable_failover: Try the next provider after a failure
        """
        self._providers = sorted(
            [p for p in providers if p.config.enabled],
            key=lambda p: p.config.priority,
        )
        self._default_timeout = default_timeout
        self._enable_failover = enable_failover
        self._failover_count = 0

        if not self._providers:
            raise ValueError("At least one enabled provider is required")

        logger.info(
            "LLM router initialized",
            providers=[p.name for p in self._providers],
        )

    @property
    def providers(self) -> list[LLMProvider]:
        return self._providers

    @property
    def failover_count(self) -> int:
        return self._failover_count

    def _build_prompt(self, prompt: str, schema: dict[str, Any] | None) -> str:
        if schema is None:
            return prompt
        return (
            f"{prompt}\n\n"
            "## Response Format\n"
            "Return only a JSON object that conforms to this JSON schema:\n"
            f"{json.dumps(schema, indent=2)}"
        )

    async def generate(
        self,
        prompt: str,
        schema: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        """
        Generate a completion.

        Args:
            prompt: Prompt text
            schema: Optional JSON schema the answer must follow
            timeout: Seconds allowed per provider attempt

        Returns:
            LLMResponse; success=False with an error message when every
            provider failed
        """
        full_prompt = self._build_prompt(prompt, schema)
        attempt_timeout = timeout or self._default_timeout
        candidates = self._providers if self._enable_failover else self._providers[:1]

        errors: list[str] = []
        attempts: list[str] = []
        started = time.monotonic()

        for idx, provider in enumerate(candidates):
            attempts.append(provider.name)
            provider.metrics.total_requests += 1
            attempt_start = time.monotonic()

            try:
                content = await provider.complete(full_prompt, attempt_timeout)
            except Exception as e:
                category = categorize_error(e)
                provider.metrics.failed_requests += 1
                if category == "timeout":
                    provider.metrics.timeouts += 1
                message = "timeout" if category == "timeout" else str(e)
                errors.append(f"{provider.name}: {message}")

                logger.warning(
                    "LLM invocation failed",
                    provider=provider.name,
                    error_category=category,
                    error=message,
                )

                if idx + 1 < len(candidates):
                    self._failover_count += 1
                    logger.info(
                        "Failing over to next provider",
                        from_provider=provider.name,
                        to_provider=candidates[idx + 1].name,
                    )
                continue

            latency_ms = (time.monotonic() - attempt_start) * 1000
            provider.metrics.successful_requests += 1
            provider.metrics.total_latency_ms += latency_ms

            return LLMResponse(
                success=True,
                content=content,
                provider=provider.name,
                latency_ms=latency_ms,
                attempts=attempts,
            )

        return LLMResponse(
            success=False,
            error="; ".join(errors) or "no provider available",
            provider=attempts[-1] if attempts else None,
            latency_ms=(time.monotonic() - started) * 1000,
            attempts=attempts,
        )


# =============================================================================
# Factory Functions
# =============================================================================


def create_provider_configs(settings: LLMSettings) -> list[ProviderConfig]:
    """
    Create provider configurations from settings.

    Priority:
    1. The configured primary provider
    2. OpenAI / Anthropic (if a key is provided)
    3. Local LLM (always available as fallback)
    """
    configs: list[ProviderConfig] = []

    if settings.openai_api_key:
        configs.append(ProviderConfig(
            provider_type=ProviderType.OPENAI,
            api_key=settings.openai_api_key.get_secret_value(),
            model=settings.openai_model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.timeout_seconds,
            priority=1 if settings.provider == "openai" else 2,
        ))

    if settings.anthropic_api_key:
        configs.append(ProviderConfig(
            provider_type=ProviderType.ANTHROPIC,
            api_key=settings.anthropic_api_key.get_secret_value(),
            model=settings.anthropic_model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.timeout_seconds,
            priority=1 if settings.provider == "anthropic" else 3,
        ))

    configs.append(ProviderConfig(
        provider_type=ProviderType.LOCAL,
        model=settings.local_llm_model,
        local_base_url=settings.local_llm_base_url,
        temperature=settings.temperature,
        timeout=settings.timeout_seconds,
        priority=1 if settings.provider == "local" else 999,
    ))

    return configs


def create_llm_router(settings: LLMSettings | None = None) -> LLMRouter:
    """Create an LLM router from settings."""
    settings = settings or get_settings().llm
    providers = [LLMProvider(config) for config in create_provider_configs(settings)]
    return LLMRouter(
        providers,
        default_timeout=settings.timeout_seconds,
        enable_failover=settings.enable_failover,
    )
