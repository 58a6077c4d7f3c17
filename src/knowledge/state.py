"""
Knowledge Extraction State and Models.

Defines the knowledge graph data model (domains, entities, facts, mentions,
card-fact joins), the pipeline-internal candidate records and the state
schema of the LangGraph extraction pipeline.

Invariants enforced here (per record):
- Entity confidence in [0, 1], external id/source set together
- Fact object is exactly one of an entity reference or a literal value
- Mention and card-fact offsets are non-negative with start <= end
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, TypedDict

from pydantic import BaseModel, Field, field_validator, model_validator

from src.knowledge.stages import Stage, StageResult
from src.knowledge.vocabulary import (
    AI_METHODS,
    DEFAULT_ENTITY_TYPE,
    REVIEW_CONFIDENCE_THRESHOLD,
    CardFactRole,
    FactExtractionMethod,
    MentionExtractionMethod,
    ObjectType,
    SourceField,
    humanize_predicate,
    inverse_of,
)


def new_id() -> str:
    """Generate a record identifier."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_offsets(start: int | None, end: int | None) -> None:
    if start is not None and end is not None and start > end:
        raise ValueError(f"text offset start ({start}) must not exceed end ({end})")


# =============================================================================
# External Records
# =============================================================================


class Card(BaseModel):
    """Card as supplied by the card repository."""

    id: str = Field(..., description="Card identifier")
    board_id: str = Field(..., description="Owning board")
    title: str = Field(default="", description="Card title")
    description: str | None = Field(default=None, description="Card description")

    @property
    def content_length(self) -> int:
        return len(self.title or "") + len(self.description or "")

    def text_fields(self) -> list[tuple[SourceField, str]]:
        """Non-blank (field, text) pairs in extraction order."""
        fields = [(SourceField.TITLE, self.title), (SourceField.DESCRIPTION, self.description)]
        return [(name, text) for name, text in fields if text and text.strip()]


# =============================================================================
# Knowledge Graph Records
# =============================================================================


class Domain(BaseModel):
    """Bounded namespace of entities and facts, scoped to one board."""

    id: str = Field(default_factory=new_id)
    board_id: str = Field(..., description="Owning board")
    name: str = Field(..., min_length=1, description="Domain name, unique per board")
    description: str = Field(default="")
    color: str = Field(default="#6B7280", pattern=r"^#[0-9A-Fa-f]{6}$")
    system_generated: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)


class Entity(BaseModel):
    """
    A named thing within a domain.

    Confidence 1.0 marks authoritative (user-created) data; anything lower
    was inferred by extraction.
    """

    id: str = Field(default_factory=new_id)
    domain_id: str = Field(..., description="Owning domain")
    name: str = Field(..., min_length=1, description="Canonical name, unique per domain")
    entity_type: str = Field(default=DEFAULT_ENTITY_TYPE, description="Entity type")
    aliases: list[str] = Field(default_factory=list, description="Alternative names")
    description: str = Field(default="")
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    external_id: str | None = Field(default=None)
    external_source: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("entity_type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> str:
        if v is None or (isinstance(v, str) and not v.strip()):
            return DEFAULT_ENTITY_TYPE
        return str(getattr(v, "value", v)).strip().lower()

    @model_validator(mode="after")
    def _external_pair(self) -> "Entity":
        if (self.external_id is None) != (self.external_source is None):
            raise ValueError("external_id and external_source must be set together")
        return self

    @property
    def all_names(self) -> list[str]:
        return [self.name, *self.aliases]

    @property
    def ai_extracted(self) -> bool:
        return self.confidence < 1.0

    @property
    def needs_review(self) -> bool:
        return self.ai_extracted and self.confidence < REVIEW_CONFIDENCE_THRESHOLD

    def has_name(self, name: str) -> bool:
        """Case-insensitive match against the name and aliases."""
        folded = name.strip().lower()
        return any(n.lower() == folded for n in self.all_names)

    def add_alias(self, alias: str) -> bool:
        """Add an alias unless blank or already known. Returns True if added."""
        alias = alias.strip()
        if not alias or alias in self.all_names:
            return False
        self.aliases.append(alias)
        self.updated_at = utcnow()
        return True


class Fact(BaseModel):
    """
    Subject-predicate-object assertion.

    The object is either another entity (object_entity_id) or a literal
    (object_value + object_type), never both and never neither. A fact with
    valid_until set is historical.
    """

    id: str = Field(default_factory=new_id)
    domain_id: str = Field(..., description="Owning domain")
    subject_entity_id: str = Field(..., description="Subject entity")
    predicate: str = Field(..., min_length=1)
    object_entity_id: str | None = Field(default=None)
    object_value: str | None = Field(default=None)
    object_type: ObjectType | None = Field(default=None)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    extraction_method: FactExtractionMethod = Field(default=FactExtractionMethod.MANUAL)
    negated: bool = Field(default=False)
    valid_from: datetime | None = Field(default=None)
    valid_until: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _exactly_one_object(self) -> "Fact":
        has_entity = self.object_entity_id is not None
        has_value = self.object_value is not None and self.object_value != ""
        if has_entity == has_value:
            raise ValueError("fact must have exactly one of object_entity_id or object_value")
        if has_entity:
            self.object_type = None
        elif self.object_type is None:
            self.object_type = ObjectType.STRING
        return self

    @property
    def is_current(self) -> bool:
        return self.valid_until is None

    @property
    def has_entity_object(self) -> bool:
        return self.object_entity_id is not None

    @property
    def inverse_predicate(self) -> str:
        return inverse_of(self.predicate)

    @property
    def needs_review(self) -> bool:
        return (
            self.extraction_method.value in AI_METHODS
            and self.confidence < REVIEW_CONFIDENCE_THRESHOLD
        )

    @property
    def triple_key(self) -> tuple[str, str, str | None, str | None]:
        return (self.subject_entity_id, self.predicate, self.object_entity_id, self.object_value)

    @property
    def typed_object_value(self) -> Any:
        """Literal object converted according to object_type."""
        value = self.object_value
        if value is None:
            return None
        if self.object_type == ObjectType.NUMBER:
            try:
                number = float(value)
            except ValueError:
                return value
            return int(number) if number.is_integer() else number
        if self.object_type == ObjectType.BOOLEAN:
            return value.strip().lower() in ("true", "yes", "1")
        if self.object_type == ObjectType.DATE:
            try:
                return date.fromisoformat(value)
            except ValueError:
                return value
        return value

    def expire(self, at: datetime | None = None) -> None:
        """Mark the fact historical."""
        self.valid_until = at or utcnow()

    def to_triple(self, subject_name: str, object_name: str | None = None) -> tuple[str, str, str]:
        obj = object_name if self.has_entity_object else self.object_value
        return (subject_name, self.predicate, obj or "")

    def to_sentence(self, subject_name: str, object_name: str | None = None) -> str:
        subject, predicate, obj = self.to_triple(subject_name, object_name)
        verb = humanize_predicate(predicate)
        if self.negated:
            verb = f"not {verb}"
        return f"{subject} {verb} {obj}"


class EntityMention(BaseModel):
    """Evidence that an entity appears in a span of a card field."""

    id: str = Field(default_factory=new_id)
    entity_id: str = Field(...)
    card_id: str = Field(...)
    mention_text: str = Field(..., min_length=1)
    source_field: SourceField = Field(default=SourceField.DESCRIPTION)
    text_offset_start: int | None = Field(default=None, ge=0)
    text_offset_end: int | None = Field(default=None, ge=0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    extraction_method: MentionExtractionMethod = Field(default=MentionExtractionMethod.MANUAL)
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _valid_offsets(self) -> "EntityMention":
        _check_offsets(self.text_offset_start, self.text_offset_end)
        return self

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.entity_id, self.card_id, self.mention_text, self.source_field.value)

    @property
    def has_position(self) -> bool:
        return self.text_offset_start is not None and self.text_offset_end is not None

    @property
    def needs_review(self) -> bool:
        return (
            self.extraction_method.value in AI_METHODS
            and self.confidence < REVIEW_CONFIDENCE_THRESHOLD
        )


class CardFact(BaseModel):
    """Join between a card and a fact."""

    id: str = Field(default_factory=new_id)
    card_id: str = Field(...)
    fact_id: str = Field(...)
    role: CardFactRole = Field(default=CardFactRole.SOURCE)
    source_field: SourceField | None = Field(default=None)
    text_offset_start: int | None = Field(default=None, ge=0)
    text_offset_end: int | None = Field(default=None, ge=0)
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _valid_offsets(self) -> "CardFact":
        _check_offsets(self.text_offset_start, self.text_offset_end)
        return self

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.card_id, self.fact_id, self.role.value)


# =============================================================================
# Candidate Records (pipeline-internal)
# =============================================================================


@dataclass
class CandidateEntity:
    """Entity proposed by pattern or LLM extraction."""

    name: str
    entity_type: str | None = None
    confidence: float | None = None
    description: str = ""
    extraction_method: str = FactExtractionMethod.AI_PATTERN.value
    source_field: str = SourceField.DESCRIPTION.value
    offset_start: int | None = None
    offset_end: int | None = None
    existing_name: str | None = None


@dataclass
class CandidateFact:
    """
    Fact proposed by pattern or LLM extraction.

    ``object_name`` holds the object entity's name when ``object_is_entity``
    is set, the literal value otherwise. Pattern facts may have no subject.
    """

    predicate: str
    object_name: str | None
    object_is_entity: bool = False
    subject_name: str | None = None
    object_type: str | None = None
    confidence: float | None = None
    negated: bool = False
    extraction_method: str = FactExtractionMethod.AI_PATTERN.value
    source_field: str = SourceField.DESCRIPTION.value
    offset_start: int | None = None
    offset_end: int | None = None


@dataclass
class CandidateMention:
    """Link between a span of text and a known entity."""

    entity_id: str
    mention_text: str
    source_field: str
    offset_start: int
    offset_end: int
    confidence: float
    extraction_method: str


@dataclass
class CandidateSet:
    """Entities and facts proposed by one extraction source."""

    entities: list[CandidateEntity] = field(default_factory=list)
    facts: list[CandidateFact] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.entities) + len(self.facts)

    def extend(self, other: "CandidateSet") -> None:
        self.entities.extend(other.entities)
        self.facts.extend(other.facts)


@dataclass
class LinkResult:
    """Mentions found by the entity linker."""

    mentions: list[CandidateMention] = field(default_factory=list)


@dataclass
class ValidatedInput:
    """Output of the validation stage."""

    card: Card
    domain: Domain
    existing_entities: list[Entity] = field(default_factory=list)
    existing_domains: list[Domain] = field(default_factory=list)


class ExtractionStats(BaseModel):
    """Candidate counts per extraction source."""

    pattern: int = 0
    llm: int = 0
    linked: int = 0


class ExtractionResult(BaseModel):
    """Summary handed back to the caller of an extraction run."""

    card_id: str
    entities: list[Entity] = Field(default_factory=list)
    facts: list[Fact] = Field(default_factory=list)
    mentions: list[EntityMention] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    stats: ExtractionStats = Field(default_factory=ExtractionStats)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def total_extracted(self) -> int:
        return len(self.entities) + len(self.facts) + len(self.mentions)

    @property
    def counts(self) -> dict[str, int]:
        return {
            "entities": len(self.entities),
            "facts": len(self.facts),
            "mentions": len(self.mentions),
        }


# =============================================================================
# Pipeline State
# =============================================================================


class KnowledgeExtractionState(TypedDict, total=False):
    """
    State for the knowledge extraction LangGraph pipeline.

    Flows through: Validate → Patterns → Link → LLM → Persist → Broadcast
    """

    # Input
    card_id: str
    run_id: str

    # Stage results keyed by stage
    results: dict[Stage, StageResult]
    current_stage: Stage | None

    # Run metadata
    errors: list[str]
    halted: bool
