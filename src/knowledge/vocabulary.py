"""
Knowledge Vocabulary.

Controlled vocabularies shared by the extraction pipeline and the data model:
entity types, the predicate registry (with inverses), provenance tags,
literal object types, mention source fields and card-fact roles.
"""

from enum import Enum


class EntityType(str, Enum):
    """Known entity types. The set is open; unknown types are kept as-is."""

    PERSON = "person"
    SYSTEM = "system"
    CONCEPT = "concept"
    LOCATION = "location"
    ORGANIZATION = "organization"
    ARTIFACT = "artifact"
    EVENT = "event"
    METRIC = "metric"


DEFAULT_ENTITY_TYPE = EntityType.CONCEPT.value

ENTITY_TYPE_DESCRIPTIONS: dict[str, str] = {
    EntityType.PERSON.value: "Team members, stakeholders, users",
    EntityType.SYSTEM.value: "Software systems, services, APIs, databases",
    EntityType.CONCEPT.value: "Abstract ideas, methodologies, practices",
    EntityType.LOCATION.value: "Physical or logical locations",
    EntityType.ORGANIZATION.value: "Companies, teams, departments",
    EntityType.ARTIFACT.value: "Documents, code files, designs",
    EntityType.EVENT.value: "Meetings, releases, milestones",
    EntityType.METRIC.value: "KPIs, measurements, numbers",
}


class FactExtractionMethod(str, Enum):
    """Provenance of a fact."""

    MANUAL = "manual"
    AI_LLM = "ai_llm"
    AI_PATTERN = "ai_pattern"
    INFERRED = "inferred"


class MentionExtractionMethod(str, Enum):
    """Provenance of a mention, including the linker strategy that found it."""

    MANUAL = "manual"
    AI_LLM = "ai_llm"
    AI_PATTERN = "ai_pattern"
    FUZZY_MATCH = "fuzzy_match"
    EXACT_MATCH = "exact_match"
    ALIAS_MATCH = "alias_match"
    TOKEN_OVERLAP = "token_overlap"


AI_METHODS = frozenset({
    FactExtractionMethod.AI_LLM.value,
    FactExtractionMethod.AI_PATTERN.value,
    MentionExtractionMethod.FUZZY_MATCH.value,
    MentionExtractionMethod.EXACT_MATCH.value,
    MentionExtractionMethod.ALIAS_MATCH.value,
    MentionExtractionMethod.TOKEN_OVERLAP.value,
})


class ObjectType(str, Enum):
    """Type tag for literal fact objects."""

    STRING = "string"
    DATE = "date"
    NUMBER = "number"
    BOOLEAN = "boolean"
    REFERENCE = "reference"


class SourceField(str, Enum):
    """Card field a mention or fact was read from."""

    TITLE = "title"
    DESCRIPTION = "description"
    COMMENT = "comment"
    CONTENT = "content"


class CardFactRole(str, Enum):
    """How a card relates to a fact."""

    SOURCE = "source"
    EVIDENCE = "evidence"
    RELATED = "related"


# Confidence below which AI-extracted records are flagged for review
REVIEW_CONFIDENCE_THRESHOLD = 0.8


# =============================================================================
# Predicate Registry
# =============================================================================

COMMON_PREDICATES: dict[str, str] = {
    "owns": "Ownership relationship",
    "manages": "Management relationship",
    "created": "Creator relationship",
    "depends_on": "Dependency relationship",
    "is_part_of": "Composition relationship",
    "relates_to": "General relationship",
    "blocks": "Blocking relationship",
    "implements": "Implementation relationship",
    "uses": "Usage relationship",
    "has_version": "Version attribute",
    "has_status": "Status attribute",
    "has_priority": "Priority attribute",
    "assigned_to": "Assignment relationship",
    "reviewed_by": "Review relationship",
    "deployed_to": "Deployment relationship",
    "migrated_from": "Migration relationship",
    "integrates_with": "Integration relationship",
}

_INVERSES: dict[str, str] = {
    "owns": "owned_by",
    "manages": "managed_by",
    "depends_on": "depended_on_by",
    "is_part_of": "contains",
    "blocks": "blocked_by",
}
INVERSE_PREDICATES: dict[str, str] = {
    **_INVERSES,
    **{inverse: predicate for predicate, inverse in _INVERSES.items()},
}

# Predicates whose object is itself an entity reference
ENTITY_OBJECT_PREDICATES = frozenset({"depends_on", "blocks", "assigned_to", "owned_by"})


def inverse_of(predicate: str) -> str:
    """Return the inverse predicate, or the predicate itself when it has none."""
    return INVERSE_PREDICATES.get(predicate, predicate)


def is_common_predicate(predicate: str) -> bool:
    return predicate in COMMON_PREDICATES


def humanize_predicate(predicate: str) -> str:
    """'depends_on' -> 'depends on'"""
    return predicate.replace("_", " ")
