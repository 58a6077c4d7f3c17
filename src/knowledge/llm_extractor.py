"""
LLM Extraction Adapter.

Deep extraction of entities and facts from card content through the LLM
router, for cards where pattern extraction under-delivered.

Degradation chain for the response:
1. JSON validated against KnowledgeExtractionOutput
2. Raw JSON parsed best-effort
3. Empty result with the error recorded

An LLM failure never aborts the pipeline.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog
from langchain_core.prompts import PromptTemplate
from pydantic import BaseModel, Field

from src.knowledge.state import (
    Card,
    CandidateEntity,
    CandidateFact,
    CandidateSet,
    Domain,
    Entity,
)
from src.knowledge.vocabulary import (
    COMMON_PREDICATES,
    ENTITY_TYPE_DESCRIPTIONS,
    FactExtractionMethod,
)
from src.llm.provider import LLMResponse, LLMRouter

logger = structlog.get_logger(__name__)

DEFAULT_LLM_CONFIDENCE = 0.8


class LLMExtractedEntity(BaseModel):
    """Entity as returned by the LLM."""

    name: str = Field(..., min_length=1, description="Canonical entity name")
    entity_type: str = Field(..., min_length=1, description="Entity type")
    description: str = Field(default="", description="Short description from context")
    confidence: float = Field(..., ge=0.0, le=1.0)
    is_new: bool = Field(..., description="False when reusing an existing entity")
    existing_entity_name: str | None = Field(
        default=None, description="Name of the reused existing entity"
    )


class LLMExtractedFact(BaseModel):
    """Fact as returned by the LLM."""

    subject: str = Field(..., min_length=1, description="Subject entity name")
    predicate: str = Field(..., min_length=1, description="snake_case predicate")
    object: str = Field(..., min_length=1, description="Object entity name or literal value")
    object_is_entity: bool = Field(..., description="True when the object names an entity")
    object_type: str | None = Field(default=None, description="Literal type when not an entity")
    confidence: float = Field(..., ge=0.0, le=1.0)
    negated: bool = Field(default=False)


class KnowledgeExtractionOutput(BaseModel):
    """Schema for LLM knowledge extraction output."""

    entities: list[LLMExtractedEntity] = Field(default_factory=list)
    facts: list[LLMExtractedFact] = Field(default_factory=list)


EXTRACTION_PROMPT = PromptTemplate.from_template(
    """Extract entities and facts from this kanban card content.

## Card Information
Title: {title}
Description: {description}

## Existing Entities (reuse these if mentioned)
{existing_entities}

## Existing Domains
{existing_domains}

## Entity Types
{entity_types}

## Common Predicates
{predicates}

## Instructions
Extract:
1. **Entities**: Named things mentioned in the card
   - People (names, roles)
   - Systems (services, APIs, databases)
   - Concepts (technologies, patterns, standards)
   - Artifacts (files, classes, modules)
   - Organizations (teams, companies)

2. **Facts**: Relationships or attributes about entities
   - Relationships between entities: "X depends on Y", "A owns B"
   - Attributes: "X has version 2.0", "Y has status active"

Rules:
- Prefer matching existing entities over creating new ones
- Use clear, canonical names for new entities
- Assign confidence scores (0.0-1.0) based on certainty
- Only include facts that are clearly stated or strongly implied"""
)


@dataclass
class LLMExtraction:
    """Outcome of one LLM extraction call."""

    candidates: CandidateSet = field(default_factory=CandidateSet)
    error: str | None = None
    provider: str | None = None
    validated: bool = False


class LLMExtractor:
    """Prompting, invocation and response parsing for LLM extraction."""

    def __init__(
        self,
        router: LLMRouter,
        enabled: bool = False,
        min_content_length: int = 50,
        max_pattern_yield: int = 3,
        timeout: float = 30.0,
        entity_limit: int = 30,
        domain_limit: int = 50,
    ) -> None:
        self._router = router
        self._enabled = enabled
        self._min_content_length = min_content_length
        self._max_pattern_yield = max_pattern_yield
        self._timeout = timeout
        self._entity_limit = entity_limit
        self._domain_limit = domain_limit

    @property
    def enabled(self) -> bool:
        return self._enabled

    def should_use_llm(self, card: Card, pattern_yield: int) -> bool:
        """
        Reserve LLM calls for cards where cheap methods under-delivered:
        enabled, enough content, and low pattern yield.
        """
        if not self._enabled:
            return False
        if card.content_length <= self._min_content_length:
            return False
        return pattern_yield < self._max_pattern_yield

    def build_prompt(
        self,
        card: Card,
        existing_entities: list[Entity],
        existing_domains: list[Domain],
    ) -> str:
        entities_text = "\n".join(
            f"- {e.name} ({e.entity_type})" for e in existing_entities[: self._entity_limit]
        )
        domains_text = ", ".join(d.name for d in existing_domains[: self._domain_limit])
        return EXTRACTION_PROMPT.format(
            title=card.title,
            description=card.description or "(no description)",
            existing_entities=entities_text or "(none)",
            existing_domains=domains_text or "General",
            entity_types="\n".join(f"- {k}: {v}" for k, v in ENTITY_TYPE_DESCRIPTIONS.items()),
            predicates=", ".join(COMMON_PREDICATES),
        )

    async def extract(
        self,
        card: Card,
        existing_entities: list[Entity],
        existing_domains: list[Domain],
    ) -> LLMExtraction:
        """Run LLM extraction for a card. Never raises."""
        prompt = self.build_prompt(card, existing_entities, existing_domains)
        response = await self._router.generate(
            prompt,
            schema=KnowledgeExtractionOutput.model_json_schema(),
            timeout=self._timeout,
        )

        if not response.success:
            logger.warning(
                "LLM extraction failed",
                card_id=card.id,
                provider=response.provider,
                error=response.error,
            )
            return LLMExtraction(error=response.error or "LLM call failed", provider=response.provider)

        extraction = self.parse_response(response)
        logger.info(
            "LLM extraction completed",
            card_id=card.id,
            provider=response.provider,
            validated=extraction.validated,
            entities=len(extraction.candidates.entities),
            facts=len(extraction.candidates.facts),
            latency_ms=round(response.latency_ms, 1),
        )
        return extraction

    def parse_response(self, response: LLMResponse) -> LLMExtraction:
        output, validation_error = response.validated(KnowledgeExtractionOutput)
        if output is not None:
            return LLMExtraction(
                candidates=_from_output(output),
                provider=response.provider,
                validated=True,
            )

        logger.debug("LLM output failed validation", error=validation_error)
        data = response.parsed_json()
        if data is None:
            return LLMExtraction(
                error=f"Unparseable LLM response: {validation_error}",
                provider=response.provider,
            )

        return LLMExtraction(candidates=_from_raw(data), provider=response.provider)


def _from_output(output: KnowledgeExtractionOutput) -> CandidateSet:
    entities = [
        CandidateEntity(
            name=e.name.strip(),
            entity_type=e.entity_type,
            description=e.description,
            confidence=e.confidence,
            existing_name=None if e.is_new else e.existing_entity_name,
            extraction_method=FactExtractionMethod.AI_LLM.value,
        )
        for e in output.entities
        if e.name.strip()
    ]
    facts = [
        CandidateFact(
            subject_name=f.subject.strip(),
            predicate=f.predicate.strip(),
            object_name=f.object.strip(),
            object_is_entity=f.object_is_entity,
            object_type=f.object_type,
            confidence=f.confidence,
            negated=f.negated,
            extraction_method=FactExtractionMethod.AI_LLM.value,
        )
        for f in output.facts
    ]
    return CandidateSet(entities=entities, facts=facts)


def _from_raw(data: dict[str, Any]) -> CandidateSet:
    """Best-effort mapping of unvalidated JSON; malformed items are dropped."""
    candidates = CandidateSet()

    for item in _as_list(data.get("entities")):
        name = _text(item.get("name"))
        if not name:
            continue
        candidates.entities.append(CandidateEntity(
            name=name,
            entity_type=_text(item.get("entity_type")) or None,
            description=_text(item.get("description")),
            confidence=_confidence(item.get("confidence")),
            existing_name=_text(item.get("existing_entity_name")) or None,
            extraction_method=FactExtractionMethod.AI_LLM.value,
        ))

    for item in _as_list(data.get("facts")):
        subject = _text(item.get("subject"))
        predicate = _text(item.get("predicate"))
        obj = _text(item.get("object"))
        if not (subject and predicate and obj):
            continue
        candidates.facts.append(CandidateFact(
            subject_name=subject,
            predicate=predicate,
            object_name=obj,
            object_is_entity=_flag(item.get("object_is_entity")),
            object_type=_text(item.get("object_type")) or None,
            confidence=_confidence(item.get("confidence")),
            negated=_flag(item.get("negated")),
            extraction_method=FactExtractionMethod.AI_LLM.value,
        ))

    return candidates


def _flag(value: Any) -> bool:
    """Only a JSON true or the string "true" counts as set."""
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def _as_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _confidence(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return DEFAULT_LLM_CONFIDENCE
    return min(max(score, 0.0), 1.0)
