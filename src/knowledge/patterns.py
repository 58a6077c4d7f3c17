"""
Pattern Library.

Declarative table of regex extraction rules. A rule yields a candidate
entity when it defines ``entity_type`` and a candidate fact when it defines
``fact_predicate``.
"""

import re
from dataclasses import dataclass

from src.knowledge.vocabulary import ENTITY_OBJECT_PREDICATES, EntityType


@dataclass(frozen=True)
class PatternRule:
    """Single extraction rule."""

    name: str
    regex: re.Pattern[str]
    confidence: float
    entity_type: str | None = None
    fact_predicate: str | None = None
    # Take the whole match as the value instead of the first capture group
    use_full_match: bool = False

    def value_span(self, match: re.Match[str]) -> tuple[str, int, int] | None:
        """Return (value, start, end) for a match, or None when the value is empty."""
        if self.use_full_match or match.re.groups == 0:
            group = 0
        else:
            group = 1
        value = match.group(group)
        if value is None or not value.strip():
            return None
        return value, match.start(group), match.end(group)


PATTERNS: tuple[PatternRule, ...] = (
    # @mentions
    PatternRule(
        name="mention",
        regex=re.compile(r"@(\w+)"),
        entity_type=EntityType.PERSON.value,
        confidence=0.9,
    ),
    # Assignee patterns
    PatternRule(
        name="assigned_to",
        regex=re.compile(r"(?:assigned to|owner:|lead:)\s*(\w+(?:\s+\w+)?)", re.IGNORECASE),
        entity_type=EntityType.PERSON.value,
        confidence=0.85,
    ),
    # Version numbers
    PatternRule(
        name="version",
        regex=re.compile(r"v?(\d+\.\d+(?:\.\d+)?)"),
        fact_predicate="has_version",
        confidence=0.95,
    ),
    # URLs
    PatternRule(
        name="url",
        regex=re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+"),
        entity_type=EntityType.ARTIFACT.value,
        confidence=0.95,
    ),
    # GitHub/Jira references
    PatternRule(
        name="issue_ref",
        regex=re.compile(r"(?:#|[A-Z]+-)\d+"),
        entity_type=EntityType.ARTIFACT.value,
        confidence=0.9,
    ),
    # Service/API names
    PatternRule(
        name="service",
        regex=re.compile(r"(?:(\w+)[-_]?(?:service|api|server|db|database|cache))", re.IGNORECASE),
        entity_type=EntityType.SYSTEM.value,
        confidence=0.8,
        use_full_match=True,
    ),
    # Component names
    PatternRule(
        name="component",
        regex=re.compile(r"(?:(\w+)(?:Controller|Model|View|Component|Module|Service|Helper|Job|Worker))"),
        entity_type=EntityType.ARTIFACT.value,
        confidence=0.85,
        use_full_match=True,
    ),
    # Due dates
    PatternRule(
        name="due_date",
        regex=re.compile(
            r"(?:due|deadline|by):\s*(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{2,4})", re.IGNORECASE
        ),
        fact_predicate="has_deadline",
        confidence=0.9,
    ),
    # Dependencies
    PatternRule(
        name="depends_on",
        regex=re.compile(r"(?:depends on|requires|needs|blocked by)\s+[\"']?([^\"'\n,]+)[\"']?", re.IGNORECASE),
        fact_predicate="depends_on",
        confidence=0.8,
    ),
    # Blocks
    PatternRule(
        name="blocks",
        regex=re.compile(r"(?:blocks|blocking)\s+[\"']?([^\"'\n,]+)[\"']?", re.IGNORECASE),
        fact_predicate="blocks",
        confidence=0.8,
    ),
)


def entity_patterns() -> list[PatternRule]:
    return [rule for rule in PATTERNS if rule.entity_type]


def fact_patterns() -> list[PatternRule]:
    return [rule for rule in PATTERNS if rule.fact_predicate]


def is_entity_object_predicate(predicate: str) -> bool:
    """Whether facts with this predicate point at another entity."""
    return predicate in ENTITY_OBJECT_PREDICATES
