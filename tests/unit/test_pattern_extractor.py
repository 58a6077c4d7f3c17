"""
Unit Tests for Pattern Extraction.

Tests the pattern library and extractor including:
- Per-rule entity and fact candidates
- Name and value normalization
- Subject anchoring of pattern facts
- Card-level extraction across fields
"""

import pytest

from src.knowledge.pattern_extractor import (
    PatternExtractor,
    normalize_name,
    normalize_value,
    parse_date,
    titleize,
)
from src.knowledge.patterns import PATTERNS, entity_patterns, fact_patterns
from src.knowledge.state import Card, CandidateSet


@pytest.fixture
def extractor() -> PatternExtractor:
    return PatternExtractor()


def names(result: CandidateSet) -> dict[str, str | None]:
    return {e.name: e.entity_type for e in result.entities}


def facts_by_predicate(result: CandidateSet) -> dict[str, list]:
    grouped: dict[str, list] = {}
    for fact in result.facts:
        grouped.setdefault(fact.predicate, []).append(fact)
    return grouped


# =============================================================================
# Pattern Library Tests
# =============================================================================


class TestPatternLibrary:
    """Test the rule table."""

    def test_rule_names(self) -> None:
        """Test that all ten rules are present in order."""
        assert [rule.name for rule in PATTERNS] == [
            "mention",
            "assigned_to",
            "version",
            "url",
            "issue_ref",
            "service",
            "component",
            "due_date",
            "depends_on",
            "blocks",
        ]

    def test_entity_and_fact_rules(self) -> None:
        """Test the split between entity rules and fact rules."""
        assert {r.name for r in fact_patterns()} == {"version", "due_date", "depends_on", "blocks"}
        assert len(entity_patterns()) == 6

    def test_confidences_in_range(self) -> None:
        """Test that every rule has a valid confidence."""
        assert all(0.0 < rule.confidence <= 1.0 for rule in PATTERNS)


# =============================================================================
# Normalization Tests
# =============================================================================


class TestNormalization:
    """Test name and value normalization."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("auth service", "Auth Service"),
            ("PaymentService", "Payment Service"),
            ("jane_doe", "Jane Doe"),
            ("JOHN", "John"),
        ],
    )
    def test_titleize(self, value: str, expected: str) -> None:
        """Test title-casing with camelCase and underscore splitting."""
        assert titleize(value) == expected

    def test_person_name(self) -> None:
        """Test that person names drop the @ and are title-cased."""
        assert normalize_name("@john", "person") == "John"

    def test_system_name(self) -> None:
        """Test that system names replace separators with spaces."""
        assert normalize_name("billing_api", "system") == "Billing Api"
        assert normalize_name("auth-service", "system") == "Auth Service"

    def test_other_names_only_stripped(self) -> None:
        """Test that artifact names are kept verbatim."""
        assert normalize_name(" UserController ", "artifact") == "UserController"

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2024-03-15", "2024-03-15"),
            ("03/15/2024", "2024-03-15"),
            ("03/15/24", "2024-03-15"),
            ("next week", None),
        ],
    )
    def test_parse_date(self, value: str, expected: str | None) -> None:
        """Test accepted date formats."""
        assert parse_date(value) == expected

    def test_version_value(self) -> None:
        """Test that a leading v is stripped from versions."""
        assert normalize_value("v1.2", "has_version") == ("1.2", "string")

    def test_deadline_value(self) -> None:
        """Test deadline parsing and its raw fallback."""
        assert normalize_value("03/15/2024", "has_deadline") == ("2024-03-15", "date")
        assert normalize_value("tomorrow", "has_deadline") == ("tomorrow", "string")

    def test_entity_object_value(self) -> None:
        """Test that entity-object predicates carry no literal type."""
        assert normalize_value(" Auth ", "depends_on") == ("Auth", None)


# =============================================================================
# Extraction Tests
# =============================================================================


class TestPatternExtractor:
    """Test extraction over single text blobs."""

    def test_card_title_scenario(self, extractor: PatternExtractor) -> None:
        """Test a title that triggers mention, service, version and dependency rules."""
        text = "Fix auth-service bug, depends on v2.1.0, assigned to @john"
        result = extractor.extract(text, "title")

        assert names(result) == {"John": "person", "Auth Service": "system"}

        grouped = facts_by_predicate(result)
        version = grouped["has_version"][0]
        assert version.object_name == "2.1.0"
        assert version.object_is_entity is False
        assert text[version.offset_start:version.offset_end] == "2.1.0"

        dependency = grouped["depends_on"][0]
        assert dependency.object_name == "v2.1.0"
        assert dependency.object_is_entity is True

        assert {f.subject_name for f in result.facts} == {"Auth Service"}
        assert all(f.source_field == "title" for f in result.facts)
        assert result.total == 4

    def test_service_offsets(self, extractor: PatternExtractor) -> None:
        """Test that service entities span the whole match."""
        text = "Fix auth-service bug"
        entity = extractor.extract(text).entities[0]

        assert text[entity.offset_start:entity.offset_end] == "auth-service"

    def test_empty_text(self, extractor: PatternExtractor) -> None:
        """Test that empty or blank text yields nothing."""
        assert extractor.extract("").total == 0
        assert extractor.extract("   ").total == 0
        assert extractor.extract(None).total == 0

    def test_mentions_deduplicated(self, extractor: PatternExtractor) -> None:
        """Test case-insensitive entity deduplication."""
        result = extractor.extract("@john pairs with @John")

        assert [e.name for e in result.entities] == ["John"]

    def test_mention_with_underscore(self, extractor: PatternExtractor) -> None:
        """Test that underscores in handles become spaces."""
        assert names(extractor.extract("ping @jane_doe")) == {"Jane Doe": "person"}

    def test_assignee(self, extractor: PatternExtractor) -> None:
        """Test owner:/lead: assignee patterns."""
        result = extractor.extract("owner: alice")
        entity = result.entities[0]

        assert entity.name == "Alice"
        assert entity.entity_type == "person"
        assert entity.confidence == 0.85

    def test_url(self, extractor: PatternExtractor) -> None:
        """Test URL artifacts."""
        result = extractor.extract("See https://github.com/org/repo/pull/42 for details")

        assert names(result)["https://github.com/org/repo/pull/42"] == "artifact"

    def test_issue_references(self, extractor: PatternExtractor) -> None:
        """Test GitHub and Jira style references."""
        result = extractor.extract("Relates to PROJ-123 and #45")

        assert names(result) == {"PROJ-123": "artifact", "#45": "artifact"}

    def test_components(self, extractor: PatternExtractor) -> None:
        """Test component names and service names in one text."""
        result = extractor.extract("Update UserController and PaymentService")
        found = names(result)

        assert found["UserController"] == "artifact"
        assert found["Payment Service"] == "system"

    @pytest.mark.parametrize(
        "text,expected,object_type",
        [
            ("Ship it, due: 2024-03-15", "2024-03-15", "date"),
            ("deadline: 03/15/2024", "2024-03-15", "date"),
        ],
    )
    def test_due_dates(
        self, extractor: PatternExtractor, text: str, expected: str, object_type: str
    ) -> None:
        """Test deadline facts with ISO normalization."""
        fact = facts_by_predicate(extractor.extract(text))["has_deadline"][0]

        assert fact.object_name == expected
        assert fact.object_type == object_type
        assert fact.confidence == 0.9

    def test_blocks(self, extractor: PatternExtractor) -> None:
        """Test blocking facts point at an entity."""
        fact = facts_by_predicate(extractor.extract("This blocks the release train"))["blocks"][0]

        assert fact.object_name == "the release train"
        assert fact.object_is_entity is True
        assert fact.object_type is None

    def test_facts_not_deduplicated(self, extractor: PatternExtractor) -> None:
        """Test that repeated facts are all reported."""
        result = extractor.extract("v1.0 then v1.0 again")

        assert len(facts_by_predicate(result)["has_version"]) == 2


class TestFactAnchoring:
    """Test subject assignment for pattern facts."""

    def test_first_system_entity_is_subject(self, extractor: PatternExtractor) -> None:
        """Test that the earliest system entity becomes the subject."""
        result = extractor.extract("cache-db depends on auth-service")
        fact = facts_by_predicate(result)["depends_on"][0]

        assert fact.object_name == "auth-service"
        assert fact.subject_name == "Cache Db"

    def test_entity_inside_fact_span_not_used(self, extractor: PatternExtractor) -> None:
        """Test that a fact's own object is never its subject."""
        result = extractor.extract("Fix bug, blocked by billing-api")
        fact = facts_by_predicate(result)["depends_on"][0]

        assert fact.object_name == "billing-api"
        assert fact.subject_name is None

    def test_no_anchor_available(self, extractor: PatternExtractor) -> None:
        """Test that facts stay subjectless without system or artifact entities."""
        result = extractor.extract("due: 2024-03-15, ping @john")

        assert all(f.subject_name is None for f in result.facts)


class TestExtractCard:
    """Test card-level extraction."""

    def test_fields_combined(self, extractor: PatternExtractor) -> None:
        """Test extraction over title and description."""
        card = Card(
            id="c1",
            board_id="b1",
            title="Deploy @john",
            description="@John upgrades to v3.2",
        )
        result = extractor.extract_card(card)

        assert [e.name for e in result.entities] == ["John"]
        assert result.entities[0].source_field == "title"
        fact = result.facts[0]
        assert fact.predicate == "has_version"
        assert fact.object_name == "3.2"
        assert fact.source_field == "description"

    def test_blank_description_skipped(self, extractor: PatternExtractor) -> None:
        """Test that a missing description is ignored."""
        card = Card(id="c1", board_id="b1", title="Short title")

        assert extractor.extract_card(card).total == 0
