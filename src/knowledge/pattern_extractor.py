"""
Pattern Extractor.

Applies the pattern library to card text. Fast and high precision, but
limited coverage; the LLM stage fills the gaps.
"""

import re
from datetime import datetime

import structlog

from src.knowledge.patterns import PATTERNS, PatternRule, is_entity_object_predicate
from src.knowledge.state import Card, CandidateEntity, CandidateFact, CandidateSet
from src.knowledge.vocabulary import EntityType, FactExtractionMethod, ObjectType, SourceField

logger = structlog.get_logger(__name__)

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y")

# Entity types a subjectless pattern fact may be anchored to
ANCHOR_TYPES = frozenset({EntityType.SYSTEM.value, EntityType.ARTIFACT.value})

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def titleize(value: str) -> str:
    """'auth service' -> 'Auth Service', 'PaymentService' -> 'Payment Service'"""
    spaced = _CAMEL_BOUNDARY.sub(" ", value).replace("_", " ")
    return " ".join(word[:1].upper() + word[1:].lower() for word in spaced.split())


def parse_date(value: str) -> str | None:
    """Parse a date string into ISO form, None when unparseable."""
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt).date().isoformat()
        except ValueError:
            continue
    return None


def normalize_name(value: str, entity_type: str) -> str:
    value = value.strip()
    if entity_type == EntityType.PERSON.value:
        return titleize(value.removeprefix("@"))
    if entity_type == EntityType.SYSTEM.value:
        return titleize(re.sub(r"[-_]", " ", value))
    return value


def normalize_value(value: str, predicate: str) -> tuple[str, str | None]:
    """Normalize a fact object. Returns (value, object_type)."""
    if predicate == "has_version":
        return re.sub(r"^v", "", value.strip(), flags=re.IGNORECASE), ObjectType.STRING.value
    if predicate == "has_deadline":
        parsed = parse_date(value)
        if parsed is not None:
            return parsed, ObjectType.DATE.value
        return value, ObjectType.STRING.value
    if is_entity_object_predicate(predicate):
        return value.strip(), None
    return value.strip(), ObjectType.STRING.value


class PatternExtractor:
    """
    Regex-based extraction of candidate entities and facts.

    Usage:
        extractor = PatternExtractor()
        result = extractor.extract("Fix auth bug for @john", SourceField.TITLE)
    """

    def __init__(self, rules: tuple[PatternRule, ...] = PATTERNS) -> None:
        self._rules = rules

    def extract(
        self,
        text: str | None,
        source_field: SourceField | str = SourceField.CONTENT,
    ) -> CandidateSet:
        """
        Extract candidates from one text blob.

        Entities are deduplicated by case-insensitive name; facts are not.
        Empty or blank text yields an empty result.
        """
        if not text or not text.strip():
            return CandidateSet()

        field = SourceField(source_field).value
        entities: list[CandidateEntity] = []
        facts: list[CandidateFact] = []

        for rule in self._rules:
            for match in rule.regex.finditer(text):
                span = rule.value_span(match)
                if span is None:
                    continue
                value, start, end = span

                if rule.entity_type:
                    entities.append(CandidateEntity(
                        name=normalize_name(value, rule.entity_type),
                        entity_type=rule.entity_type,
                        confidence=rule.confidence,
                        extraction_method=FactExtractionMethod.AI_PATTERN.value,
                        source_field=field,
                        offset_start=start,
                        offset_end=end,
                    ))

                if rule.fact_predicate:
                    object_name, object_type = normalize_value(value, rule.fact_predicate)
                    facts.append(CandidateFact(
                        predicate=rule.fact_predicate,
                        object_name=object_name,
                        object_is_entity=is_entity_object_predicate(rule.fact_predicate),
                        object_type=object_type,
                        confidence=rule.confidence,
                        extraction_method=FactExtractionMethod.AI_PATTERN.value,
                        source_field=field,
                        offset_start=start,
                        offset_end=end,
                    ))

        self._anchor_facts(facts, entities)

        return CandidateSet(entities=_unique_by_name(entities), facts=facts)

    def extract_card(self, card: Card) -> CandidateSet:
        """Extract from the card's title and description."""
        combined = CandidateSet()
        for field, text in card.text_fields():
            combined.extend(self.extract(text, field))

        combined.entities = _unique_by_name(combined.entities)

        logger.debug(
            "Pattern extraction completed",
            card_id=card.id,
            entities=len(combined.entities),
            facts=len(combined.facts),
        )
        return combined

    def _anchor_facts(self, facts: list[CandidateFact], entities: list[CandidateEntity]) -> None:
        """Give subjectless facts the first system/artifact entity outside their own span."""
        anchors = sorted(
            (e for e in entities if e.entity_type in ANCHOR_TYPES),
            key=lambda e: e.offset_start or 0,
        )
        for fact in facts:
            if fact.subject_name:
                continue
            for anchor in anchors:
                if _within(anchor, fact):
                    continue
                fact.subject_name = anchor.name
                break


def _within(entity: CandidateEntity, fact: CandidateFact) -> bool:
    if entity.offset_start is None or fact.offset_start is None:
        return False
    return fact.offset_start <= entity.offset_start and (entity.offset_end or 0) <= (fact.offset_end or 0)


def _unique_by_name(entities: list[CandidateEntity]) -> list[CandidateEntity]:
    seen: set[str] = set()
    unique: list[CandidateEntity] = []
    for entity in entities:
        key = entity.name.lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(entity)
    return unique
